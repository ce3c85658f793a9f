# SPDX-License-Identifier: LGPL-2.1-or-later

from typing import Optional


class MkcosError(Exception):
    """Base class for all errors that abort an image build."""


class ParseError(MkcosError, ValueError):
    pass


class ConfigError(MkcosError):
    pass


class KernelError(MkcosError):
    pass


class DuplicateKernelError(KernelError):
    pass


class MissingKernelError(KernelError):
    pass


class MissingFilesystemTarError(KernelError):
    pass


class ArchiveIOError(MkcosError):
    pass


class OutputError(MkcosError):
    pass


class CollaboratorError(MkcosError):
    """A pull, extraction or bundling step failed for a specific image.

    The underlying exception is chained as __cause__.
    """

    def __init__(self, stage: str, image: Optional[str], message: str) -> None:
        self.stage = stage
        self.image = image
        super().__init__(f"{stage} failed for {image}: {message}" if image else f"{stage} failed: {message}")
