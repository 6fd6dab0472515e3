from __future__ import annotations

import os
from pathlib import Path


MANIFEST_NAME = "Cargo.toml"


def home_dir() -> Path:
    """Per-user state directory (~/.batterypack, or $BATTERYPACK_HOME)."""

    override = os.environ.get("BATTERYPACK_HOME")
    if override:
        return Path(override).expanduser().resolve()
    return Path.home().resolve() / ".batterypack"


def config_path() -> Path:
    return home_dir() / "config.toml"


def find_manifest(start: Path) -> Path | None:
    """Nearest Cargo.toml at or above `start`."""

    cur = start.resolve()
    for d in (cur, *cur.parents):
        candidate = d / MANIFEST_NAME
        if candidate.is_file():
            return candidate
    return None


def work_root(start: Path | None = None) -> Path:
    """Directory of the project being edited.

    `BATTERYPACK_ROOT` wins; otherwise the nearest directory at or above
    `start` (default: cwd) holding a Cargo.toml, else `start` itself.
    """

    root = os.environ.get("BATTERYPACK_ROOT")
    if root:
        return Path(root).expanduser().resolve()
    base = (start or Path.cwd()).resolve()
    found = find_manifest(base)
    return found.parent if found is not None else base
