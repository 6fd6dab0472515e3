from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any


class BatteryPackError(Exception):
    """Base exception for batterypack errors."""


@dataclass(frozen=True)
class ParseError(BatteryPackError):
    """Raised when a manifest cannot be parsed as TOML."""

    path: Path | None
    message: str
    lineno: int | None = None
    colno: int | None = None

    def __str__(self) -> str:
        loc = ""
        if self.lineno is not None and self.colno is not None:
            loc = f" (line {self.lineno}, column {self.colno})"
        where = str(self.path) if self.path is not None else "<manifest>"
        return f"Invalid TOML in {where}: {self.message}{loc}"


@dataclass(frozen=True)
class SpecError(BatteryPackError):
    """Raised when a pack declaration is malformed. The pack is skipped."""

    source: str
    message: str

    def __str__(self) -> str:
        return f"Invalid battery pack {self.source}: {self.message}"


@dataclass(frozen=True)
class ApplyError(BatteryPackError):
    """Raised when a change-set cannot be applied. The model is left untouched."""

    message: str
    change: Any = None

    def __str__(self) -> str:
        if self.change is not None:
            return f"Failed to apply {self.change}: {self.message}"
        return f"Failed to apply changes: {self.message}"


@dataclass(frozen=True)
class FetchError(BatteryPackError):
    """Raised when a registry or network request fails. Retryable."""

    url: str
    message: str

    def __str__(self) -> str:
        return f"Failed to fetch {self.url}: {self.message}"


@dataclass(frozen=True)
class NotFoundError(BatteryPackError):
    """Raised for an unknown pack, crate, template or path."""

    kind: str
    name: str
    hint: str = ""

    def __str__(self) -> str:
        msg = f"{self.kind} '{self.name}' not found"
        if self.hint:
            msg += f". {self.hint}"
        return msg


@dataclass(frozen=True)
class ConfigValidationError(BatteryPackError):
    """Raised when the settings file does not match the expected schema."""

    path: Path
    message: str

    def __str__(self) -> str:
        return f"Invalid config in {self.path}: {self.message}"
