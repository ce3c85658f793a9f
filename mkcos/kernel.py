# SPDX-License-Identifier: LGPL-2.1-or-later

import io
import tarfile
from collections.abc import Collection
from typing import IO, Optional

from mkcos.errors import ArchiveIOError, DuplicateKernelError, MissingFilesystemTarError, MissingKernelError

KERNEL_NAMES = ("kernel", "bzImage")
KERNEL_TAR_NAME = "kernel.tar"


def make_boot_fragment(kernel: tarfile.TarInfo, data: IO[bytes], cmdline: str) -> bytes:
    buf = io.BytesIO()

    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        boot = tarfile.TarInfo("boot")
        boot.type = tarfile.DIRTYPE
        boot.mode = 0o700
        tar.addfile(boot)

        image = tarfile.TarInfo("boot/kernel")
        image.mode = kernel.mode
        image.size = kernel.size
        tar.addfile(image, data)

        encoded = cmdline.encode()
        info = tarfile.TarInfo("boot/cmdline")
        info.mode = 0o700
        info.size = len(encoded)
        tar.addfile(info, io.BytesIO(encoded))

    return buf.getvalue()


def split_kernel(
    image: bytes,
    *,
    cmdline: str,
    names: Collection[str] = KERNEL_NAMES,
    tar_name: str = KERNEL_TAR_NAME,
) -> tuple[bytes, bytes]:
    """Split the export of a kernel container into a boot fragment and a filesystem fragment.

    The container must hold exactly one kernel image, under one of names,
    and a tarball of the kernel's filesystem (modules, firmware) named
    tar_name. The kernel is rewritten to boot/kernel next to a boot/cmdline
    file holding cmdline, the filesystem tarball is returned untouched.
    """
    kernel: Optional[bytes] = None
    ktar: Optional[bytes] = None

    try:
        with tarfile.open(fileobj=io.BytesIO(image), mode="r|") as tar:
            for member in tar:
                if member.name in names:
                    if kernel is not None:
                        raise DuplicateKernelError("found more than one possible kernel image")

                    data = tar.extractfile(member)
                    if data is None:
                        raise ArchiveIOError(f"{member.name} in kernel image is not a regular file")

                    kernel = make_boot_fragment(member, data, cmdline)
                elif member.name == tar_name:
                    data = tar.extractfile(member)
                    if data is None:
                        raise ArchiveIOError(f"{member.name} in kernel image is not a regular file")

                    ktar = data.read()
    except (tarfile.TarError, OSError) as e:
        raise ArchiveIOError(f"Failed to read kernel image: {e}") from e

    if kernel is None:
        raise MissingKernelError("did not find kernel in kernel image")
    if ktar is None:
        raise MissingFilesystemTarError(f"did not find {tar_name} in kernel image")

    return kernel, ktar
