# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import enum
import gzip
import io
import logging
import os
import subprocess
import tarfile
import tempfile
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import BinaryIO

from mkcos.archive import iter_archive, tar_to_cpio
from mkcos.errors import OutputError
from mkcos.log import complete_step
from mkcos.run import run
from mkcos.util import StrEnum


class OutputFormat(StrEnum):
    kernel_initrd = "kernel+initrd"
    tar = enum.auto()
    iso_bios = enum.auto()
    iso_efi = enum.auto()
    raw = enum.auto()

    def convert(self, image: bytes, base: Path, *, size_mb: int = 0) -> list[Path]:
        """Write image in this format next to base and return the paths that were written."""
        if self == OutputFormat.kernel_initrd:
            return output_kernel_initrd(image, base)
        if self == OutputFormat.tar:
            return output_tar(image, base)

        return output_mkimage(self, image, base, size_mb=size_mb)


# The container images doing the conversion and the file name suffix of their output.
MKIMAGE = {
    OutputFormat.iso_bios: ("linuxkit/mkimage-iso-bios", ".iso"),
    OutputFormat.iso_efi:  ("linuxkit/mkimage-iso-efi", "-efi.iso"),
    OutputFormat.raw:      ("linuxkit/mkimage-raw-bios", ".raw"),
}  # fmt: skip


@contextlib.contextmanager
def atomic_output(path: Path) -> Iterator[BinaryIO]:
    """Only make path appear once everything has been written to it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)

    try:
        with os.fdopen(fd, "wb") as f:
            yield f
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


# Only what split_kernel() put there, anything else below boot/ stays in the initrd.
BOOT_ENTRIES = frozenset({"boot", "boot/kernel", "boot/cmdline"})


def in_boot(name: str) -> bool:
    return name in BOOT_ENTRIES


def split_boot(image: bytes) -> tuple[bytes, str, bytes]:
    """Returns the kernel, the kernel command line and the initrd (a gzipped cpio archive) of image."""
    kernel = cmdline = None

    for member, data in iter_archive(image):
        if member.name == "boot/kernel":
            kernel = data
        elif member.name == "boot/cmdline":
            cmdline = (data or b"").decode()

    if kernel is None:
        raise OutputError("Image does not contain a kernel, a kernel section is required for this output")

    initrd = gzip.compress(tar_to_cpio(image, exclude=in_boot), mtime=0)
    return kernel, cmdline or "", initrd


def output_kernel_initrd(image: bytes, base: Path) -> list[Path]:
    kernel, cmdline, initrd = split_boot(image)

    outputs = []
    for suffix, data in (("-kernel", kernel), ("-initrd.img", initrd), ("-cmdline", cmdline.encode())):
        path = base.with_name(f"{base.name}{suffix}")
        with atomic_output(path) as f:
            f.write(data)
        outputs.append(path)

    return outputs


def output_tar(image: bytes, base: Path) -> list[Path]:
    path = base.with_name(f"{base.name}.tar")
    with atomic_output(path) as f:
        f.write(image)
    return [path]


def mkimage_input(kernel: bytes, cmdline: str, initrd: bytes) -> bytes:
    buf = io.BytesIO()

    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for name, data in (("kernel", kernel), ("initrd.img", initrd), ("cmdline", cmdline.encode())):
            info = tarfile.TarInfo(name)
            info.mode = 0o644
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))

    return buf.getvalue()


def output_mkimage(format: OutputFormat, image: bytes, base: Path, *, size_mb: int) -> list[Path]:
    container, suffix = MKIMAGE[format]

    cmd = ["docker", "run", "--rm", "-i", container]
    if format == OutputFormat.raw:
        if not size_mb:
            raise OutputError(f"A non-zero size is required for {format} output")
        cmd += [str(size_mb)]

    path = base.with_name(f"{base.name}{suffix}")

    with atomic_output(path) as f:
        try:
            run(cmd, input=mkimage_input(*split_boot(image)), stdout=f, stderr=subprocess.PIPE)
        except (OSError, subprocess.CalledProcessError) as e:
            raise OutputError(f"Failed to create {format} output with {container}") from e

    return [path]


def write_outputs(
    image: bytes,
    base: Path,
    formats: Sequence[OutputFormat],
    *,
    size_mb: int = 0,
) -> list[Path]:
    written = []

    for format in formats:
        with complete_step(f"Creating {format} output…"):
            paths = format.convert(image, base, size_mb=size_mb)
            for p in paths:
                logging.info(f"  {p}")
            written += paths

    return written
