# SPDX-License-Identifier: LGPL-2.1-or-later

import io
import logging
import subprocess
import tarfile
from pathlib import Path
from typing import Any

from mkcos.archive import append_archive, open_archive
from mkcos.config import BuildConfig, ContainerConfig
from mkcos.errors import ArchiveIOError
from mkcos.filesystem import make_filesystem
from mkcos.log import complete_step
from mkcos.oci import dump_config, oci_config
from mkcos.run import run

# Files docker adds to every container that have no business in the image.
EXCLUDE = frozenset({".dockerenv", "Dockerfile", "dev/console", "dev/pts", "dev/shm"})

HOSTS = b"""\
127.0.0.1       localhost
::1     localhost ip6-localhost ip6-loopback
fe00::0 ip6-localnet
ff00::0 ip6-mcastprefix
ff02::1 ip6-allnodes
ff02::2 ip6-allrouters
"""

# Files docker bind mounts into every container, replaced by these contents.
REPLACE = {
    "etc/hosts": HOSTS,
    "etc/resolv.conf": b"",
    "etc/hostname": b"",
}


def rewrite_export(export: bytes, prefix: str = "") -> bytes:
    """Rewrite the output of docker export to be placed below prefix in the image."""
    buf = io.BytesIO()

    try:
        with tarfile.open(fileobj=io.BytesIO(export), mode="r|") as src, open_archive(buf) as dst:
            for member in src:
                name = member.name
                if name in EXCLUDE:
                    continue

                member.name = prefix + name
                if member.islnk():
                    member.linkname = prefix + member.linkname

                if name in REPLACE and member.isreg():
                    data = REPLACE[name]
                    member.size = len(data)
                    dst.addfile(member, io.BytesIO(data))
                else:
                    dst.addfile(member, src.extractfile(member) if member.isreg() else None)
    except (tarfile.TarError, OSError) as e:
        raise ArchiveIOError(f"Failed to read container export: {e}") from e

    return buf.getvalue()


def parent_dirs(path: str) -> list[str]:
    """Returns every leading directory of path, outermost first, path itself included."""
    parts = path.strip("/").split("/")
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


def bundle_header(path: str, config: bytes) -> list[tuple[tarfile.TarInfo, bytes]]:
    # The initramfs unpacker does not create missing parents, so each one gets its own entry.
    entries = []
    for name in parent_dirs(path):
        d = tarfile.TarInfo(name)
        d.type = tarfile.DIRTYPE
        d.mode = 0o755
        entries.append((d, b""))

    cfg = tarfile.TarInfo(f"{path}/config.json")
    cfg.mode = 0o644
    cfg.size = len(config)

    rootfs = tarfile.TarInfo(f"{path}/rootfs")
    rootfs.type = tarfile.DIRTYPE
    rootfs.mode = 0o755

    return [*entries, (cfg, config), (rootfs, b"")]


class Docker:
    """Pulls, exports and bundles images with the docker command line client."""

    def __init__(self, *, root: Path = Path(".")) -> None:
        self.root = root

    def pull(self, image: str, *, verify: bool) -> None:
        with complete_step(f"Pulling {image}{' with content trust' if verify else ''}…"):
            run(
                ["docker", "pull", image],
                env={"DOCKER_CONTENT_TRUST": "1"} if verify else {},
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )

    def create(self, image: str, *, log: bool = True) -> str:
        # The command is never run, but docker refuses to create containers without one.
        p = run(
            ["docker", "create", image, "/dev/null"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            log=log,
        )
        return p.stdout.decode().strip()

    def export(self, image: str, *, verify: bool, pull: bool) -> bytes:
        if pull or verify:
            self.pull(image, verify=verify)

        try:
            container = self.create(image, log=pull or verify)
        except subprocess.CalledProcessError:
            if pull or verify:
                raise
            logging.info(f"Image {image} not found locally, pulling it")
            self.pull(image, verify=verify)
            container = self.create(image)

        try:
            p = run(["docker", "export", container], stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            return p.stdout
        finally:
            run(["docker", "rm", container], stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)

    def extract(self, image: str, *, prefix: str = "", verify: bool = False, pull: bool = False) -> bytes:
        return rewrite_export(self.export(image, verify=verify, pull=pull), prefix)

    def oci_config(self, container: ContainerConfig) -> dict[str, Any]:
        return oci_config(container)

    def bundle(
        self,
        path: str,
        image: str,
        config: dict[str, Any],
        *,
        verify: bool = False,
        pull: bool = False,
    ) -> bytes:
        rootfs = self.extract(image, prefix=f"{path}/rootfs/", verify=verify, pull=pull)

        buf = io.BytesIO()
        with open_archive(buf) as tar:
            for info, data in bundle_header(path, dump_config(config)):
                tar.addfile(info, io.BytesIO(data) if info.isreg() else None)

            append_archive(tar, rootfs)

        return buf.getvalue()

    def filesystem(self, config: BuildConfig) -> bytes:
        return make_filesystem(config.files, root=self.root)
