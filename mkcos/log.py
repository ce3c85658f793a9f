# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import contextvars
import logging
import os
import sys
from collections.abc import Iterator
from typing import NoReturn, Optional

# Set from --debug once the command line has been parsed.
ARG_DEBUG = contextvars.ContextVar("debug", default=False)

# Nesting depth of complete_step(), used to indent step messages.
LEVEL = 0


def terminal_is_dumb() -> bool:
    return not sys.stdout.isatty() or not sys.stderr.isatty() or os.getenv("TERM", "") == "dumb"


class Style:
    # fmt: off
    bold: str   = "\033[0;1;39m"     if not terminal_is_dumb() else ""
    gray: str   = "\033[0;38;5;245m" if not terminal_is_dumb() else ""
    red: str    = "\033[31;1m"       if not terminal_is_dumb() else ""
    yellow: str = "\033[33;1m"       if not terminal_is_dumb() else ""
    reset: str  = "\033[0m"          if not terminal_is_dumb() else ""
    # fmt: on


def die(message: str, *, hint: Optional[str] = None) -> NoReturn:
    logging.error(message)
    if hint:
        logging.info(f"({hint})")
    sys.exit(1)


def log_step(text: str) -> None:
    indent = " " * LEVEL

    # While an exception is propagating the step is only context for the error below it.
    if sys.exc_info()[0]:
        logging.info(f"{indent}({text})")
    else:
        logging.info(f"{indent}{Style.bold}{text}{Style.reset}")


def log_notice(text: str) -> None:
    logging.info(f"{Style.bold}{text}{Style.reset}")


@contextlib.contextmanager
def complete_step(text: str) -> Iterator[None]:
    global LEVEL

    log_step(text)

    LEVEL += 1
    try:
        yield
    finally:
        LEVEL -= 1
        assert LEVEL >= 0


class Formatter(logging.Formatter):
    """Prefixes every message with ‣ and colours it by severity."""

    def color(self, levelno: int) -> str:
        if levelno >= logging.ERROR:
            return Style.red
        if levelno >= logging.WARNING:
            return Style.yellow
        if levelno <= logging.DEBUG:
            return Style.gray
        return ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.color(record.levelno)
        message = super().format(record)

        if record.levelno >= logging.CRITICAL:
            color += Style.bold

        return f"‣ {color}{message}{Style.reset}" if color else f"‣ {message}"


def log_setup(default_log_level: str = "info") -> None:
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(Formatter("%(message)s"))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(os.getenv("MKCOS_LOG_LEVEL", default_log_level).upper())
