# SPDX-License-Identifier: LGPL-2.1-or-later

import io
import tarfile
from collections.abc import Sequence
from pathlib import Path

from mkcos.config import FileConfig
from mkcos.errors import ConfigError


def file_entry(file: FileConfig, root: Path) -> tuple[tarfile.TarInfo, bytes]:
    name = file.path.lstrip("/")
    if not name:
        raise ConfigError("files: entry with empty path")

    info = tarfile.TarInfo(name)

    if file.directory:
        if file.contents is not None or file.source is not None or file.symlink is not None:
            raise ConfigError(f"files: {name} is a directory and cannot have contents, source or symlink")

        info.type = tarfile.DIRTYPE
        info.mode = file.mode if file.mode is not None else 0o755
        return info, b""

    if file.symlink is not None:
        if file.contents is not None or file.source is not None:
            raise ConfigError(f"files: {name} is a symlink and cannot have contents or source")

        info.type = tarfile.SYMTYPE
        info.linkname = file.symlink
        info.mode = 0o777
        return info, b""

    if (file.contents is None) == (file.source is None):
        raise ConfigError(f"files: {name} must specify exactly one of contents or source")

    if file.contents is not None:
        data = file.contents.encode()
    else:
        assert file.source is not None
        try:
            data = (root / file.source).read_bytes()
        except OSError as e:
            raise ConfigError(f"files: cannot read source {file.source} of {name}: {e.strerror}") from e

    info.mode = file.mode if file.mode is not None else 0o600
    info.size = len(data)
    return info, data


def make_filesystem(files: Sequence[FileConfig], *, root: Path = Path(".")) -> bytes:
    """Build the tar fragment holding the files section of a config, in declaration order."""
    buf = io.BytesIO()

    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for file in files:
            info, data = file_entry(file, root)
            tar.addfile(info, io.BytesIO(data) if info.isreg() else None)

    return buf.getvalue()
