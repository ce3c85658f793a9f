# SPDX-License-Identifier: LGPL-2.1-or-later

import json
from collections.abc import Iterator
from typing import Any

from mkcos.config import ContainerConfig
from mkcos.errors import ConfigError
from mkcos.util import tuplify

OCI_VERSION = "1.0.1"
DEFAULT_PATH = "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# The capabilities a container gets from Docker by default.
DEFAULT_CAPABILITIES = (
    "CAP_AUDIT_WRITE",
    "CAP_CHOWN",
    "CAP_DAC_OVERRIDE",
    "CAP_FOWNER",
    "CAP_FSETID",
    "CAP_KILL",
    "CAP_MKNOD",
    "CAP_NET_BIND_SERVICE",
    "CAP_NET_RAW",
    "CAP_SETFCAP",
    "CAP_SETGID",
    "CAP_SETPCAP",
    "CAP_SETUID",
    "CAP_SYS_CHROOT",
)

ALL_CAPABILITIES = (
    "CAP_AUDIT_CONTROL",
    "CAP_AUDIT_READ",
    "CAP_AUDIT_WRITE",
    "CAP_BLOCK_SUSPEND",
    "CAP_BPF",
    "CAP_CHECKPOINT_RESTORE",
    "CAP_CHOWN",
    "CAP_DAC_OVERRIDE",
    "CAP_DAC_READ_SEARCH",
    "CAP_FOWNER",
    "CAP_FSETID",
    "CAP_IPC_LOCK",
    "CAP_IPC_OWNER",
    "CAP_KILL",
    "CAP_LEASE",
    "CAP_LINUX_IMMUTABLE",
    "CAP_MAC_ADMIN",
    "CAP_MAC_OVERRIDE",
    "CAP_MKNOD",
    "CAP_NET_ADMIN",
    "CAP_NET_BIND_SERVICE",
    "CAP_NET_BROADCAST",
    "CAP_NET_RAW",
    "CAP_PERFMON",
    "CAP_SETFCAP",
    "CAP_SETGID",
    "CAP_SETPCAP",
    "CAP_SETUID",
    "CAP_SYSLOG",
    "CAP_SYS_ADMIN",
    "CAP_SYS_BOOT",
    "CAP_SYS_CHROOT",
    "CAP_SYS_MODULE",
    "CAP_SYS_NICE",
    "CAP_SYS_PACCT",
    "CAP_SYS_PTRACE",
    "CAP_SYS_RAWIO",
    "CAP_SYS_RESOURCE",
    "CAP_SYS_TIME",
    "CAP_SYS_TTY_CONFIG",
    "CAP_WAKE_ALARM",
)


def default_mounts() -> list[dict[str, Any]]:
    return [
        {
            "destination": "/proc",
            "type": "proc",
            "source": "proc",
            "options": ["nosuid", "noexec", "nodev"],
        },
        {
            "destination": "/dev",
            "type": "tmpfs",
            "source": "tmpfs",
            "options": ["nosuid", "strictatime", "mode=755", "size=65536k"],
        },
        {
            "destination": "/dev/pts",
            "type": "devpts",
            "source": "devpts",
            "options": ["nosuid", "noexec", "newinstance", "ptmxmode=0666", "mode=0620"],
        },
        {
            "destination": "/dev/shm",
            "type": "tmpfs",
            "source": "shm",
            "options": ["nosuid", "noexec", "nodev", "mode=1777", "size=65536k"],
        },
        {
            "destination": "/dev/mqueue",
            "type": "mqueue",
            "source": "mqueue",
            "options": ["nosuid", "noexec", "nodev"],
        },
        {
            "destination": "/sys",
            "type": "sysfs",
            "source": "sysfs",
            "options": ["nosuid", "noexec", "nodev", "ro"],
        },
    ]


def parse_bind(bind: str) -> dict[str, Any]:
    src, sep, rest = bind.partition(":")
    dst, _, opts = rest.partition(":")

    if not sep or not src.startswith("/") or not dst.startswith("/"):
        raise ConfigError(f"Invalid bind mount {bind!r}, expected /source:/destination[:options]")

    options = opts.split(",") if opts else []
    if "bind" not in options and "rbind" not in options:
        options = ["rbind", *options]

    return {"destination": dst, "type": "bind", "source": src, "options": options}


def parse_tmpfs(tmpfs: str) -> dict[str, Any]:
    dst, _, opts = tmpfs.partition(":")

    if not dst.startswith("/"):
        raise ConfigError(f"Invalid tmpfs mount {tmpfs!r}, expected /destination[:options]")

    options = opts.split(",") if opts else []
    return {"destination": dst, "type": "tmpfs", "source": "tmpfs", "options": options}


@tuplify
def finalize_capabilities(capabilities: list[str]) -> Iterator[str]:
    if not capabilities:
        yield from DEFAULT_CAPABILITIES
        return

    for cap in capabilities:
        if cap.lower() == "all":
            yield from ALL_CAPABILITIES
            continue

        cap = cap.upper()
        if not cap.startswith("CAP_"):
            cap = f"CAP_{cap}"
        if cap not in ALL_CAPABILITIES:
            raise ConfigError(f"Unknown capability {cap}")

        yield cap


def namespaces(container: ContainerConfig) -> list[dict[str, str]]:
    ns = [{"type": "mount"}]

    for kind, setting in (
        ("network", container.net),
        ("pid", container.pid),
        ("ipc", container.ipc),
        ("uts", container.uts),
    ):
        if setting != "host":
            ns.append({"type": kind})

    return ns


def oci_config(container: ContainerConfig) -> dict[str, Any]:
    """Translate a container entry into an OCI runtime config.json document."""
    caps = sorted(set(finalize_capabilities(container.capabilities)))

    mounts = default_mounts()
    mounts += [parse_bind(b) for b in container.binds]
    mounts += [parse_tmpfs(t) for t in container.tmpfs]

    env = list(container.env)
    if not any(e.startswith("PATH=") for e in env):
        env.insert(0, DEFAULT_PATH)

    config: dict[str, Any] = {
        "ociVersion": OCI_VERSION,
        "process": {
            "terminal": False,
            "user": {"uid": container.uid, "gid": container.gid},
            "args": list(container.command),
            "env": env,
            "cwd": container.cwd or "/",
            "capabilities": {
                "bounding": caps,
                "effective": caps,
                "inheritable": caps,
                "permitted": caps,
                "ambient": caps,
            },
            "noNewPrivileges": True,
        },
        "root": {"path": "rootfs", "readonly": container.readonly},
        "mounts": mounts,
        "linux": {"namespaces": namespaces(container)},
    }

    # Setting a hostname requires a private UTS namespace.
    if container.uts != "host":
        config["hostname"] = container.hostname or container.name

    return config


def dump_config(config: dict[str, Any]) -> bytes:
    return json.dumps(config, indent=4, sort_keys=True).encode() + b"\n"
