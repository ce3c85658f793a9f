# SPDX-License-Identifier: LGPL-2.1-or-later

import argparse
import dataclasses
import enum
import logging
import sys
import textwrap
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import IO, Any, Optional, TypeVar

import yaml

from mkcos.errors import ConfigError, ParseError
from mkcos.log import ARG_DEBUG, Style
from mkcos.output import OutputFormat
from mkcos.util import StrEnum, unique

T = TypeVar("T")

DEFAULT_NAME_FOR_STDIN = "mkcos"
DEFAULT_SIZE = "1024M"


class Verb(StrEnum):
    build = enum.auto()
    summary = enum.auto()


def parse_size_mb(value: str) -> int:
    """Parse a size given in megabytes, optionally suffixed with M or G.

    An empty string yields 0.
    """
    if not value:
        return 0

    factor = 1
    number = value
    if value.endswith("G"):
        factor = 1024
        number = value[:-1]
    elif value.endswith("M"):
        number = value[:-1]

    # int() accepts surrounding whitespace and underscores, a size should be plain digits.
    if not (number.isascii() and number.isdigit()):
        raise ParseError(f"Unable to parse disk size {value!r}")

    return int(number) * factor


@dataclasses.dataclass(frozen=True)
class KernelConfig:
    image: str
    cmdline: str = ""


@dataclasses.dataclass(frozen=True)
class ContainerConfig:
    name: str
    image: str
    command: list[str] = dataclasses.field(default_factory=list)
    env: list[str] = dataclasses.field(default_factory=list)
    cwd: Optional[str] = None
    capabilities: list[str] = dataclasses.field(default_factory=list)
    binds: list[str] = dataclasses.field(default_factory=list)
    tmpfs: list[str] = dataclasses.field(default_factory=list)
    net: Optional[str] = None
    pid: Optional[str] = None
    ipc: Optional[str] = None
    uts: Optional[str] = None
    hostname: Optional[str] = None
    readonly: bool = False
    uid: int = 0
    gid: int = 0


@dataclasses.dataclass(frozen=True)
class FileConfig:
    path: str
    contents: Optional[str] = None
    source: Optional[str] = None
    symlink: Optional[str] = None
    directory: bool = False
    mode: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class TrustConfig:
    image: frozenset[str] = frozenset()
    org: frozenset[str] = frozenset()

    def __bool__(self) -> bool:
        return bool(self.image or self.org)


@dataclasses.dataclass(frozen=True)
class BuildConfig:
    """The declarative description of an image.

    The position of an entry in onboot is its boot order, the numeric
    prefix of its bundle directory is derived from it when the image is
    assembled.
    """

    kernel: Optional[KernelConfig] = None
    init: list[str] = dataclasses.field(default_factory=list)
    onboot: list[ContainerConfig] = dataclasses.field(default_factory=list)
    services: list[ContainerConfig] = dataclasses.field(default_factory=list)
    trust: TrustConfig = TrustConfig()
    files: list[FileConfig] = dataclasses.field(default_factory=list)


def expect(where: str, value: Any, type: type[T]) -> T:
    # bool is a subclass of int, don't let "uid: true" through.
    if not isinstance(value, type) or (type is int and isinstance(value, bool)):
        raise ConfigError(f"{where}: expected {type.__name__}, got {value!r}")
    return value


def expect_mapping(where: str, value: Any, keys: Sequence[str]) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{where}: expected a mapping, got {value!r}")

    if unknown := [str(k) for k in value if k not in keys]:
        raise ConfigError(f"{where}: unknown setting(s) {', '.join(sorted(unknown))}")

    return value


def expect_string_list(where: str, value: Any) -> list[str]:
    if value is None:
        return []

    return [expect(f"{where}[{i}]", v, str) for i, v in enumerate(expect(where, value, list))]


def parse_mode(where: str, value: Any) -> Optional[int]:
    if value is None:
        return None

    if isinstance(value, str):
        try:
            value = int(value, 8)
        except ValueError:
            raise ConfigError(f"{where}: {value!r} is not a valid octal mode") from None

    mode = expect(where, value, int)
    if not 0 <= mode <= 0o7777:
        raise ConfigError(f"{where}: mode {oct(mode)} out of range")

    return mode


def parse_namespace(where: str, value: Any) -> Optional[str]:
    if value is None:
        return None

    ns = expect(where, value, str)
    if ns not in ("host", "new"):
        raise ConfigError(f"{where}: expected 'host' or 'new', got {ns!r}")

    return ns


def parse_kernel(value: Any) -> Optional[KernelConfig]:
    if value is None:
        return None

    kernel = expect_mapping("kernel", value, ("image", "cmdline"))
    image = expect("kernel.image", kernel.get("image", ""), str)
    if not image:
        return None

    return KernelConfig(image=image, cmdline=expect("kernel.cmdline", kernel.get("cmdline") or "", str))


CONTAINER_KEYS = tuple(f.name for f in dataclasses.fields(ContainerConfig))


def parse_container(where: str, value: Any) -> ContainerConfig:
    c = expect_mapping(where, value, CONTAINER_KEYS)

    for key in ("name", "image"):
        if not c.get(key):
            raise ConfigError(f"{where}: missing required setting {key}")

    name = expect(f"{where}.name", c["name"], str)
    if "/" in name or name in (".", ".."):
        raise ConfigError(f"{where}.name: {name!r} is not a valid container name")

    return ContainerConfig(
        name=name,
        image=expect(f"{where}.image", c["image"], str),
        command=expect_string_list(f"{where}.command", c.get("command")),
        env=expect_string_list(f"{where}.env", c.get("env")),
        cwd=expect(f"{where}.cwd", c["cwd"], str) if c.get("cwd") is not None else None,
        capabilities=expect_string_list(f"{where}.capabilities", c.get("capabilities")),
        binds=expect_string_list(f"{where}.binds", c.get("binds")),
        tmpfs=expect_string_list(f"{where}.tmpfs", c.get("tmpfs")),
        net=parse_namespace(f"{where}.net", c.get("net")),
        pid=parse_namespace(f"{where}.pid", c.get("pid")),
        ipc=parse_namespace(f"{where}.ipc", c.get("ipc")),
        uts=parse_namespace(f"{where}.uts", c.get("uts")),
        hostname=expect(f"{where}.hostname", c["hostname"], str) if c.get("hostname") is not None else None,
        readonly=expect(f"{where}.readonly", c.get("readonly", False), bool),
        uid=expect(f"{where}.uid", c.get("uid", 0), int),
        gid=expect(f"{where}.gid", c.get("gid", 0), int),
    )


def parse_containers(section: str, value: Any) -> list[ContainerConfig]:
    if value is None:
        return []

    containers = [parse_container(f"{section}[{i}]", v) for i, v in enumerate(expect(section, value, list))]

    seen = set()
    for c in containers:
        if c.name in seen:
            raise ConfigError(f"{section}: duplicate container name {c.name!r}")
        seen.add(c.name)

    return containers


FILE_KEYS = tuple(f.name for f in dataclasses.fields(FileConfig))


def parse_file(where: str, value: Any) -> FileConfig:
    f = expect_mapping(where, value, FILE_KEYS)

    def optional_string(key: str) -> Optional[str]:
        return expect(f"{where}.{key}", f[key], str) if f.get(key) is not None else None

    return FileConfig(
        path=expect(f"{where}.path", f.get("path", ""), str),
        contents=optional_string("contents"),
        source=optional_string("source"),
        symlink=optional_string("symlink"),
        directory=expect(f"{where}.directory", f.get("directory", False), bool),
        mode=parse_mode(f"{where}.mode", f.get("mode")),
    )


def parse_trust(value: Any) -> TrustConfig:
    if value is None:
        return TrustConfig()

    trust = expect_mapping("trust", value, ("image", "org"))
    return TrustConfig(
        image=frozenset(expect_string_list("trust.image", trust.get("image"))),
        org=frozenset(expect_string_list("trust.org", trust.get("org"))),
    )


def parse_build_config(text: str) -> BuildConfig:
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}") from e

    if payload is None:
        payload = {}

    config = expect_mapping("config", payload, ("kernel", "init", "onboot", "services", "trust", "files"))

    files = config.get("files")

    return BuildConfig(
        kernel=parse_kernel(config.get("kernel")),
        init=expect_string_list("init", config.get("init")),
        onboot=parse_containers("onboot", config.get("onboot")),
        services=parse_containers("services", config.get("services")),
        trust=parse_trust(config.get("trust")),
        files=[parse_file(f"files[{i}]", v) for i, v in enumerate(expect("files", files or [], list))],
    )


@dataclasses.dataclass(frozen=True)
class Args:
    verb: Verb
    config: str
    name: str
    directory: Path
    size: int
    pull: bool
    disable_content_trust: bool
    outputs: list[OutputFormat]
    debug: bool


class OutputAction(argparse.Action):
    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Any,
        option_string: Optional[str] = None,
    ) -> None:
        outputs = list(getattr(namespace, self.dest, None) or [])

        # Allow comma separated values as well as repeating the option.
        for v in str(values).split(","):
            try:
                outputs.append(OutputFormat(v))
            except ValueError:
                parser.error(f"unknown output format {v!r}, choose from: {', '.join(OutputFormat.values())}")

        setattr(namespace, self.dest, outputs)


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mkcos",
        description="Build bootable initrd images from containers",
        usage="\n  "
        + textwrap.dedent("""\
              mkcos [options…] {b}build{e}   <file>[.yml] | -
                mkcos [options…] {b}summary{e} <file>[.yml] | -
                mkcos -h | --help
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
    )

    parser.add_argument(
        "verb",
        type=Verb,
        choices=list(Verb),
        help=argparse.SUPPRESS,
    )
    parser.add_argument(
        "config",
        metavar="FILE",
        help="Configuration file, or - to read it from standard input",
    )
    parser.add_argument(
        "--name",
        help="Name to use for output files",
        default="",
    )
    parser.add_argument(
        "--dir",
        dest="directory",
        help="Directory for output files, default current directory",
        type=Path,
        default=Path("."),
        metavar="PATH",
    )
    parser.add_argument(
        "--size",
        help="Size for output image, if supported and fixed size",
        default=DEFAULT_SIZE,
    )
    parser.add_argument(
        "--pull",
        help="Always pull images",
        action="store_true",
        default=False,
    )
    parser.add_argument(
        "--disable-content-trust",
        help="Skip image trust verification specified in trust section of config",
        action="store_true",
        default=False,
    )
    parser.add_argument(
        "-o",
        "--output",
        dest="outputs",
        help=f"Output types to create [ {' '.join(OutputFormat.values())} ]",
        action=OutputAction,
        metavar="FORMAT",
    )
    parser.add_argument(
        "--debug",
        help="Turn on debugging output",
        action="store_true",
        default=False,
    )

    return parser


def read_config(config: str, stdin: IO[str]) -> tuple[str, str]:
    """Returns the configuration text and the default output name derived from its location."""
    if config == "-":
        return stdin.read(), DEFAULT_NAME_FOR_STDIN

    path = Path(config)
    if path.suffix not in (".yml", ".yaml"):
        path = path.with_name(f"{path.name}.yml")

    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot open config file {path}: {e.strerror}") from e

    return text, path.stem


def parse_args(argv: Sequence[str], *, stdin: Optional[IO[str]] = None) -> tuple[Args, BuildConfig]:
    ns = create_argument_parser().parse_args(argv)

    ARG_DEBUG.set(ns.debug)

    outputs = unique(ns.outputs or [OutputFormat.kernel_initrd])
    logging.debug(f"Outputs selected: {', '.join(str(o) for o in outputs)}")

    size = parse_size_mb(ns.size)

    text, default_name = read_config(ns.config, stdin or sys.stdin)
    config = parse_build_config(text)

    if ns.disable_content_trust:
        logging.debug("Disabling content trust checks for this build")
        config = dataclasses.replace(config, trust=TrustConfig())

    args = Args(
        verb=ns.verb,
        config=ns.config,
        name=ns.name or default_name,
        directory=ns.directory,
        size=size,
        pull=ns.pull,
        disable_content_trust=ns.disable_content_trust,
        outputs=outputs,
        debug=ns.debug,
    )

    return args, config


def yes_no(b: bool) -> str:
    return "yes" if b else "no"


def none_to_none(s: Optional[object]) -> str:
    return "none" if s is None else str(s)


def line_join_list(array: Sequence[object]) -> str:
    return "\n                    ".join(str(item) for item in array) if array else "none"


def bold(s: Any) -> str:
    return f"{Style.bold}{s}{Style.reset}"


def summary(args: Args, config: BuildConfig) -> str:
    kernel = config.kernel
    onboot = [f"{i:03d}-{c.name} ({c.image})" for i, c in enumerate(config.onboot)]

    summary = f"""\
{bold(f"IMAGE: {args.name}")}

    {bold("KERNEL")}:
               Image: {none_to_none(kernel.image if kernel else None)}
             Cmdline: {none_to_none(kernel.cmdline if kernel else None)}

    {bold("CONTAINERS")}:
                Init: {line_join_list(config.init)}
              Onboot: {line_join_list(onboot)}
            Services: {line_join_list([f"{c.name} ({c.image})" for c in config.services])}
               Files: {line_join_list([f.path for f in config.files])}

    {bold("TRUST")}:
              Images: {line_join_list(sorted(config.trust.image))}
       Organizations: {line_join_list(sorted(config.trust.org))}
       Content Trust: {yes_no(not args.disable_content_trust)}

    {bold("OUTPUT")}:
           Directory: {args.directory}
             Formats: {line_join_list(args.outputs)}
                Size: {args.size}M
                Pull: {yes_no(args.pull)}
"""

    return summary
