# SPDX-License-Identifier: LGPL-2.1-or-later

import enum
import functools
from collections.abc import Iterable, Sequence
from typing import Any, Callable, TypeVar

T = TypeVar("T")


def tuplify(f: Callable[..., Iterable[T]]) -> Callable[..., tuple[T, ...]]:
    def wrapper(*args: Any, **kwargs: Any) -> tuple[T, ...]:
        return tuple(f(*args, **kwargs))

    return functools.update_wrapper(wrapper, f)


class StrEnum(enum.Enum):
    """An enum whose members print as their value, enum.auto() spells member names with dashes."""

    def __str__(self) -> str:
        assert isinstance(self.value, str)
        return self.value

    @staticmethod
    def _generate_next_value_(name: str, start: int, count: int, last_values: Sequence[str]) -> str:
        return name.replace("_", "-")

    @classmethod
    def values(cls) -> list[str]:
        return [str(s) for s in cls]


def unique(seq: Iterable[T]) -> list[T]:
    """Drop repeated items, keeping the first occurrence of each."""
    return list(dict.fromkeys(seq))
