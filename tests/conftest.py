# SPDX-License-Identifier: LGPL-2.1-or-later

import json
from collections.abc import Mapping
from typing import Any, Optional

import pytest

from mkcos.config import BuildConfig, ContainerConfig
from mkcos.filesystem import make_filesystem

from . import make_tar


def export_of(image: str) -> bytes:
    # One file per image, named after it, so the origin of each entry can be told apart.
    slug = image.replace("/", "_").replace(":", "_")
    return make_tar([(f"{slug}", image.encode())])


def kernel_export(image: str) -> bytes:
    modules = make_tar([("lib", None), ("lib/modules", None), ("lib/modules/virtio.ko", b"ko")])
    return make_tar([("kernel", f"vmlinuz from {image}".encode()), ("kernel.tar", modules)])


class FakeSource:
    """An ImageSource that records every call and returns small synthetic archives.

    Set fail to a (call, image) pair to make that call raise.
    """

    def __init__(self, exports: Mapping[str, bytes] = {}) -> None:
        self.exports = dict(exports)
        self.calls: list[tuple[Any, ...]] = []
        self.fail: Optional[tuple[str, Optional[str]]] = None

    def record(self, call: str, image: Optional[str], *args: Any) -> None:
        self.calls.append((call, image, *args))
        if self.fail == (call, image):
            raise RuntimeError(f"{call} of {image} exploded")

    def pull(self, image: str, *, verify: bool) -> None:
        self.record("pull", image, verify)

    def extract(self, image: str, *, prefix: str = "", verify: bool = False, pull: bool = False) -> bytes:
        self.record("extract", image, verify, pull)
        return self.exports.get(image) or export_of(image)

    def oci_config(self, container: ContainerConfig) -> dict[str, Any]:
        self.record("oci_config", container.image)
        return {"process": {"args": container.command}}

    def bundle(
        self,
        path: str,
        image: str,
        config: dict[str, Any],
        *,
        verify: bool = False,
        pull: bool = False,
    ) -> bytes:
        self.record("bundle", image, path, verify, pull)
        return make_tar(
            [
                (path, None),
                (f"{path}/config.json", json.dumps(config).encode()),
                (f"{path}/rootfs", None),
            ]
        )

    def filesystem(self, config: BuildConfig) -> bytes:
        self.record("filesystem", None)
        return make_filesystem(config.files)

    def called(self, call: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == call]


@pytest.fixture
def source() -> FakeSource:
    return FakeSource(
        exports={
            "linuxkit/kernel:5.10": kernel_export("linuxkit/kernel:5.10"),
        }
    )
