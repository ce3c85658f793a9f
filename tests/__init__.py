# SPDX-License-Identifier: LGPL-2.1-or-later

import io
import tarfile
from collections.abc import Mapping, Sequence
from typing import Optional


def make_tar(
    entries: Sequence[tuple[str, Optional[bytes]]],
    *,
    modes: Mapping[str, int] = {},
    symlinks: Mapping[str, str] = {},
) -> bytes:
    """Build an in-memory tar stream. Entries without data are directories, unless listed in symlinks."""
    buf = io.BytesIO()

    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for name, data in entries:
            info = tarfile.TarInfo(name)

            if name in symlinks:
                info.type = tarfile.SYMTYPE
                info.linkname = symlinks[name]
                info.mode = 0o777
            elif data is None:
                info.type = tarfile.DIRTYPE
                info.mode = modes.get(name, 0o755)
            else:
                info.mode = modes.get(name, 0o644)
                info.size = len(data)

            tar.addfile(info, io.BytesIO(data) if data is not None else None)

    return buf.getvalue()


def read_tar(archive: bytes) -> list[tuple[tarfile.TarInfo, Optional[bytes]]]:
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r:") as tar:
        entries = []
        for member in tar:
            f = tar.extractfile(member) if member.isreg() or member.islnk() else None
            entries.append((member, f.read() if f else None))

    return entries


def names(archive: bytes) -> list[str]:
    return [member.name for member, _ in read_tar(archive)]


def contents(archive: bytes) -> dict[str, Optional[bytes]]:
    return {member.name: data for member, data in read_tar(archive)}


def cpio_names(cpio: bytes) -> list[str]:
    """Walks the headers of a newc cpio archive and returns the entry names, without the trailer."""
    entries = []
    offset = 0

    while True:
        assert cpio[offset : offset + 6] == b"070701"
        size = int(cpio[offset + 54 : offset + 62], 16)
        namesize = int(cpio[offset + 94 : offset + 102], 16)

        start = offset + 110
        name = cpio[start : start + namesize - 1].decode()
        if name == "TRAILER!!!":
            return entries

        entries.append(name)
        data = start + namesize + (-(110 + namesize) % 4)
        offset = data + size + (-size % 4)
