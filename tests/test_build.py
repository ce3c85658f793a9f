# SPDX-License-Identifier: LGPL-2.1-or-later

import pytest

from mkcos import build_initrd, onboot_path, service_path
from mkcos.config import BuildConfig, ContainerConfig, FileConfig, KernelConfig, TrustConfig
from mkcos.errors import CollaboratorError, MissingKernelError

from . import contents, make_tar, names
from .conftest import FakeSource


def example_config(**kwargs: object) -> BuildConfig:
    defaults: dict[str, object] = dict(
        kernel=KernelConfig(image="linuxkit/kernel:5.10", cmdline="console=ttyS0"),
        init=["linuxkit/init:v1", "linuxkit/runc:v1"],
        onboot=[
            ContainerConfig(name="sysctl", image="linuxkit/sysctl:v1"),
            ContainerConfig(name="dhcpcd", image="linuxkit/dhcpcd:v1"),
            ContainerConfig(name="mount", image="linuxkit/mount:v1"),
        ],
        services=[ContainerConfig(name="getty", image="linuxkit/getty:v1")],
        files=[FileConfig(path="etc/motd", contents="hello\n")],
    )
    defaults.update(kwargs)
    return BuildConfig(**defaults)  # type: ignore


def test_build_initrd_order(source: FakeSource) -> None:
    image = build_initrd(example_config(), source)

    assert names(image) == [
        "boot",
        "boot/kernel",
        "boot/cmdline",
        "lib",
        "lib/modules",
        "lib/modules/virtio.ko",
        "linuxkit_init_v1",
        "linuxkit_runc_v1",
        "containers/onboot/000-sysctl",
        "containers/onboot/000-sysctl/config.json",
        "containers/onboot/000-sysctl/rootfs",
        "containers/onboot/001-dhcpcd",
        "containers/onboot/001-dhcpcd/config.json",
        "containers/onboot/001-dhcpcd/rootfs",
        "containers/onboot/002-mount",
        "containers/onboot/002-mount/config.json",
        "containers/onboot/002-mount/rootfs",
        "containers/services/getty",
        "containers/services/getty/config.json",
        "containers/services/getty/rootfs",
        "etc/motd",
    ]

    files = contents(image)
    assert files["boot/kernel"] == b"vmlinuz from linuxkit/kernel:5.10"
    assert files["boot/cmdline"] == b"console=ttyS0"
    assert files["etc/motd"] == b"hello\n"


def test_build_initrd_collaborator_calls(source: FakeSource) -> None:
    build_initrd(example_config(), source)

    assert [(c[0], c[1]) for c in source.calls] == [
        ("extract", "linuxkit/kernel:5.10"),
        ("extract", "linuxkit/init:v1"),
        ("extract", "linuxkit/runc:v1"),
        ("oci_config", "linuxkit/sysctl:v1"),
        ("bundle", "linuxkit/sysctl:v1"),
        ("oci_config", "linuxkit/dhcpcd:v1"),
        ("bundle", "linuxkit/dhcpcd:v1"),
        ("oci_config", "linuxkit/mount:v1"),
        ("bundle", "linuxkit/mount:v1"),
        ("oci_config", "linuxkit/getty:v1"),
        ("bundle", "linuxkit/getty:v1"),
        ("filesystem", None),
    ]


def test_build_initrd_is_reproducible(source: FakeSource) -> None:
    config = example_config()
    assert build_initrd(config, source) == build_initrd(config, FakeSource(source.exports))


def test_build_initrd_without_kernel(source: FakeSource) -> None:
    image = build_initrd(BuildConfig(init=["linuxkit/init:v1"]), source)

    assert names(image) == ["linuxkit_init_v1"]
    assert source.called("extract") == [("extract", "linuxkit/init:v1", False, False)]
    assert source.called("filesystem") == [("filesystem", None)]


def test_build_initrd_empty(source: FakeSource) -> None:
    assert names(build_initrd(BuildConfig(), source)) == []


def test_build_initrd_stops_at_first_failure(source: FakeSource) -> None:
    source.fail = ("bundle", "linuxkit/dhcpcd:v1")

    with pytest.raises(CollaboratorError) as e:
        build_initrd(example_config(), source)

    assert e.value.stage == "bundle"
    assert e.value.image == "linuxkit/dhcpcd:v1"
    assert isinstance(e.value.__cause__, RuntimeError)
    assert "linuxkit/dhcpcd:v1" in str(e.value)

    assert [c[1] for c in source.called("bundle")] == ["linuxkit/sysctl:v1", "linuxkit/dhcpcd:v1"]
    assert not any(c[1] in ("linuxkit/mount:v1", "linuxkit/getty:v1") for c in source.calls)
    assert source.called("filesystem") == []


def test_build_initrd_kernel_errors_are_not_wrapped(source: FakeSource) -> None:
    source.exports["linuxkit/kernel:broken"] = make_tar([("kernel.tar", b"")])

    with pytest.raises(MissingKernelError):
        build_initrd(example_config(kernel=KernelConfig(image="linuxkit/kernel:broken")), source)

    assert source.called("extract") == [("extract", "linuxkit/kernel:broken", False, False)]


def test_build_initrd_trusted_org(source: FakeSource) -> None:
    config = example_config(trust=TrustConfig(org=frozenset({"linuxkit"})))
    build_initrd(config, source)

    assert source.called("pull") == [("pull", "linuxkit/kernel:5.10", True)]
    assert source.called("extract")[0] == ("extract", "linuxkit/kernel:5.10", True, False)
    assert all(c[2] for c in source.called("extract"))
    assert all(c[3] for c in source.called("bundle"))


def test_build_initrd_trusted_image(source: FakeSource) -> None:
    config = example_config(trust=TrustConfig(image=frozenset({"linuxkit/dhcpcd"})))
    build_initrd(config, source)

    assert source.called("pull") == []
    assert [(c[1], c[3]) for c in source.called("bundle")] == [
        ("linuxkit/sysctl:v1", False),
        ("linuxkit/dhcpcd:v1", True),
        ("linuxkit/mount:v1", False),
        ("linuxkit/getty:v1", False),
    ]


def test_build_initrd_pull(source: FakeSource) -> None:
    build_initrd(example_config(), source, pull=True)

    assert source.called("pull") == [("pull", "linuxkit/kernel:5.10", False)]
    assert all(c[3] for c in source.called("extract"))
    assert all(c[4] for c in source.called("bundle"))


def test_build_initrd_pull_failure(source: FakeSource) -> None:
    source.fail = ("pull", "linuxkit/kernel:5.10")

    with pytest.raises(CollaboratorError) as e:
        build_initrd(example_config(), source, pull=True)

    assert e.value.stage == "pull"
    assert source.called("extract") == []


def test_container_paths() -> None:
    assert onboot_path(0, "sysctl") == "containers/onboot/000-sysctl"
    assert onboot_path(12, "mount") == "containers/onboot/012-mount"
    assert service_path("getty") == "containers/services/getty"
