# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import io
import tarfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Optional, Protocol

from mkcos.archive import append_archive, open_archive
from mkcos.config import Args, BuildConfig, ContainerConfig, KernelConfig, TrustConfig, Verb, summary
from mkcos.docker import Docker
from mkcos.errors import ArchiveIOError, CollaboratorError, MkcosError
from mkcos.kernel import split_kernel
from mkcos.log import complete_step, die, log_notice, log_step
from mkcos.output import write_outputs
from mkcos.run import find_binary
from mkcos.trust import enforce_content_trust

__version__ = "1"


class ImageSource(Protocol):
    def pull(self, image: str, *, verify: bool) -> None: ...

    def extract(
        self,
        image: str,
        *,
        prefix: str = "",
        verify: bool = False,
        pull: bool = False,
    ) -> bytes: ...

    def oci_config(self, container: ContainerConfig) -> dict[str, Any]: ...

    def bundle(
        self,
        path: str,
        image: str,
        config: dict[str, Any],
        *,
        verify: bool = False,
        pull: bool = False,
    ) -> bytes: ...

    def filesystem(self, config: BuildConfig) -> bytes: ...


@contextlib.contextmanager
def collaborator(stage: str, image: Optional[str] = None) -> Iterator[None]:
    """Attribute any failure of an external step to the stage and image it happened for."""
    try:
        yield
    except MkcosError:
        raise
    except Exception as e:
        raise CollaboratorError(stage, image, str(e) or type(e).__name__) from e


def onboot_path(index: int, name: str) -> str:
    # The zero padded index makes the init system start onboot containers in configuration order.
    return f"containers/onboot/{index:03d}-{name}"


def service_path(name: str) -> str:
    return f"containers/services/{name}"


def add_kernel(
    initrd: tarfile.TarFile,
    kernel: KernelConfig,
    trust: TrustConfig,
    source: ImageSource,
    *,
    pull: bool,
) -> None:
    verify = enforce_content_trust(kernel.image, trust)

    if pull or verify:
        with collaborator("pull", kernel.image):
            source.pull(kernel.image, verify=verify)

    with complete_step(f"Extracting kernel image {kernel.image}…"):
        with collaborator("extract", kernel.image):
            image = source.extract(kernel.image, verify=verify, pull=pull)

        boot, ktar = split_kernel(image, cmdline=kernel.cmdline)
        append_archive(initrd, boot)
        append_archive(initrd, ktar)


def add_container(
    initrd: tarfile.TarFile,
    path: str,
    container: ContainerConfig,
    trust: TrustConfig,
    source: ImageSource,
    *,
    pull: bool,
) -> None:
    verify = enforce_content_trust(container.image, trust)

    log_step(f"Creating OCI bundle {path} from {container.image}")

    with collaborator("OCI config", container.image):
        config = source.oci_config(container)

    with collaborator("bundle", container.image):
        fragment = source.bundle(path, container.image, config, verify=verify, pull=pull)

    append_archive(initrd, fragment)


def build_initrd(config: BuildConfig, source: ImageSource, *, pull: bool = False) -> bytes:
    """Assemble the initrd archive described by config.

    Fragments are appended in a fixed order: kernel, init images, onboot
    containers, services and finally the files section. The first error
    aborts the build and no archive is returned.
    """
    buf = io.BytesIO()
    initrd = open_archive(buf)

    if config.kernel:
        add_kernel(initrd, config.kernel, config.trust, source, pull=pull)

    if config.init:
        with complete_step("Adding init containers…"):
            for image in config.init:
                log_step(f"Extracting init image {image}")
                verify = enforce_content_trust(image, config.trust)
                with collaborator("extract", image):
                    fragment = source.extract(image, verify=verify, pull=pull)
                append_archive(initrd, fragment)

    if config.onboot:
        with complete_step("Adding onboot containers…"):
            for i, container in enumerate(config.onboot):
                path = onboot_path(i, container.name)
                add_container(initrd, path, container, config.trust, source, pull=pull)

    if config.services:
        with complete_step("Adding service containers…"):
            for container in config.services:
                path = service_path(container.name)
                add_container(initrd, path, container, config.trust, source, pull=pull)

    with complete_step("Adding files…"):
        with collaborator("filesystem"):
            fragment = source.filesystem(config)
        append_archive(initrd, fragment)

    try:
        initrd.close()
    except (tarfile.TarError, OSError) as e:
        raise ArchiveIOError(f"Failed to finalize initrd: {e}") from e

    return buf.getvalue()


def config_root(args: Args) -> Path:
    # Relative file sources are looked up next to the configuration file.
    return Path.cwd() if args.config == "-" else Path(args.config).absolute().parent


def run_build(args: Args, config: BuildConfig) -> None:
    if not find_binary("docker"):
        die("Could not find docker", hint="docker is needed to pull and export container images")

    with complete_step(f"Building {args.name}…"):
        image = build_initrd(config, Docker(root=config_root(args)), pull=args.pull)

    with complete_step("Creating outputs…"):
        write_outputs(image, args.directory / args.name, args.outputs, size_mb=args.size)

    log_notice(f"{args.name} built successfully")


def run_verb(args: Args, config: BuildConfig) -> None:
    if args.verb == Verb.summary:
        print(summary(args, config))
        return

    if args.verb == Verb.build:
        run_build(args, config)
