from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from ..models import DepKind
from ..pack import PackSpec
from .screens import CreateTarget, Target


# Key names used by `Key.name`; printable characters are passed as-is.
UP = "up"
DOWN = "down"
LEFT = "left"
RIGHT = "right"
HOME = "home"
END = "end"
ENTER = "enter"
ESC = "esc"
TAB = "tab"
BACKTAB = "backtab"
SPACE = " "
BACKSPACE = "backspace"
DELETE = "delete"


@dataclass(frozen=True)
class Key:
    name: str

    @property
    def char(self) -> str | None:
        return self.name if len(self.name) == 1 else None


@dataclass(frozen=True)
class Loaded:
    """A background task finished; `payload` depends on the target."""

    target: Target
    payload: Any


@dataclass(frozen=True)
class LoadFailed:
    target: Target
    message: str
    retryable: bool = True


Event = Union[Key, Loaded, LoadFailed]


# ----------------------------------------------------------------------
# Effects: side effects the session asks its runner to perform.
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Fetch:
    target: Target


@dataclass(frozen=True)
class OpenUrl:
    url: str


@dataclass(frozen=True)
class PackSelection:
    """What the Add screen decided for one pack."""

    pack: str
    spec: PackSpec
    installed: bool
    groups: tuple[str, ...]
    add: tuple[tuple[str, DepKind], ...] = ()
    remove: tuple[tuple[str, DepKind], ...] = ()
    register: bool = False
    registered_version: str | None = None


@dataclass(frozen=True)
class Commit:
    selections: tuple[PackSelection, ...]


@dataclass(frozen=True)
class Quit:
    pass


@dataclass(frozen=True)
class NewProject:
    target: CreateTarget


Effect = Union[Fetch, OpenUrl, NewProject, Commit, Quit]
