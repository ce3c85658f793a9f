# SPDX-License-Identifier: LGPL-2.1-or-later

import io
import stat
import tarfile
from collections.abc import Iterator
from typing import BinaryIO, Callable, Optional

from mkcos.errors import ArchiveIOError

CPIO_TRAILER = "TRAILER!!!"
# newc header fields are eight hex digits.
CPIO_FIELD_MAX = 0xFFFFFFFF


def open_archive(fileobj: BinaryIO) -> tarfile.TarFile:
    return tarfile.open(fileobj=fileobj, mode="w", format=tarfile.PAX_FORMAT)


def append_archive(output: tarfile.TarFile, fragment: bytes) -> None:
    """Copy every entry of the tar stream in fragment into output.

    Headers are carried over as found and contents are copied byte for
    byte. output is left open so that further fragments can follow.
    """
    # An empty stream is an archive without entries.
    if not fragment:
        return

    try:
        with tarfile.open(fileobj=io.BytesIO(fragment), mode="r|") as tar:
            for member in tar:
                output.addfile(member, tar.extractfile(member) if member.isreg() else None)
    except (tarfile.TarError, OSError) as e:
        raise ArchiveIOError(f"Failed to append archive: {e}") from e


def iter_archive(archive: bytes) -> Iterator[tuple[tarfile.TarInfo, Optional[bytes]]]:
    """Yields every entry of archive along with the content of regular files and hard links."""
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:") as tar:
            for member in tar:
                data = None
                if member.isreg() or member.islnk():
                    f = tar.extractfile(member)
                    assert f is not None
                    data = f.read()

                yield member, data
    except (tarfile.TarError, OSError) as e:
        raise ArchiveIOError(f"Failed to read archive: {e}") from e


def cpio_mode(member: tarfile.TarInfo) -> int:
    if member.isdir():
        kind = stat.S_IFDIR
    elif member.issym():
        kind = stat.S_IFLNK
    elif member.ischr():
        kind = stat.S_IFCHR
    elif member.isblk():
        kind = stat.S_IFBLK
    elif member.isfifo():
        kind = stat.S_IFIFO
    else:
        # Hard links are stored as copies of their target.
        kind = stat.S_IFREG

    return kind | stat.S_IMODE(member.mode)


def pad4(n: int) -> bytes:
    return b"\0" * (-n % 4)


def cpio_entry(
    ino: int,
    name: str,
    *,
    mode: int,
    uid: int = 0,
    gid: int = 0,
    mtime: int = 0,
    data: bytes = b"",
    rdevmajor: int = 0,
    rdevminor: int = 0,
) -> bytes:
    encoded = name.encode() + b"\0"
    nlink = 2 if stat.S_ISDIR(mode) else 1

    fields = (ino, mode, uid, gid, nlink, mtime, len(data), 0, 0, rdevmajor, rdevminor, len(encoded), 0)
    if any(not 0 <= f <= CPIO_FIELD_MAX for f in fields):
        raise ArchiveIOError(f"{name}: header value does not fit a cpio archive")

    header = b"070701" + b"".join(b"%08x" % f for f in fields)

    return header + encoded + pad4(len(header) + len(encoded)) + data + pad4(len(data))


def tar_to_cpio(archive: bytes, *, exclude: Callable[[str], bool] = lambda name: False) -> bytes:
    """Convert a tar archive into an uncompressed newc cpio archive as consumed by the kernel."""
    out = io.BytesIO()
    ino = 0
    dirs: set[str] = set()

    for member, data in iter_archive(archive):
        name = member.name.lstrip("/")
        if name.startswith("./"):
            name = name[2:]
        if not name or name == "." or exclude(name):
            continue

        # The kernel does not create missing parent directories when unpacking.
        parent = name.rpartition("/")[0]
        missing = []
        while parent and parent not in dirs:
            missing.append(parent)
            parent = parent.rpartition("/")[0]
        for d in reversed(missing):
            ino += 1
            out.write(cpio_entry(ino, d, mode=stat.S_IFDIR | 0o755))
            dirs.add(d)

        if member.isdir():
            dirs.add(name)
        if member.issym():
            data = member.linkname.encode()

        ino += 1
        out.write(
            cpio_entry(
                ino,
                name,
                mode=cpio_mode(member),
                uid=member.uid,
                gid=member.gid,
                mtime=max(0, int(member.mtime)),
                data=data or b"",
                rdevmajor=member.devmajor if member.ischr() or member.isblk() else 0,
                rdevminor=member.devminor if member.ischr() or member.isblk() else 0,
            )
        )

    out.write(cpio_entry(0, CPIO_TRAILER, mode=0))
    return out.getvalue()
