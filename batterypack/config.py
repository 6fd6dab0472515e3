from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

from . import paths
from .errors import ConfigValidationError
from .registry import DEFAULT_REGISTRY_URL, DEFAULT_TIMEOUT_S
from .tomldoc import parse_error


try:  # Python 3.11+
    import tomllib as _tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover (dev envs < 3.11)
    import tomli as _tomllib  # type: ignore


logger = logging.getLogger(__name__)

_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}
_ALLOWED_TOP = {"registry", "paths", "log", "timeout"}


@dataclass(frozen=True)
class Settings:
    """Effective settings: config file first, environment on top."""

    registry_url: str = DEFAULT_REGISTRY_URL
    local_paths: tuple[Path, ...] = ()
    log_level: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    config_path: Path | None = None


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigValidationError(path=path, message=f"unable to read file: {e}") from e

    try:
        data = _tomllib.loads(text)
    except _tomllib.TOMLDecodeError as e:
        raise parse_error(e, path) from e
    return data


def _unknown_keys_message(unknown: set[str]) -> str:
    keys = ", ".join(sorted(unknown))
    return f"unknown keys: {keys}"


def _require_str(path: Path, value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise ConfigValidationError(path=path, message=f"{where}: expected string")
    return value


def _require_str_list(path: Path, value: Any, where: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigValidationError(path=path, message=f"{where}: expected list of strings")
    return value


def _require_timeout(path: Path, value: Any, where: str) -> float:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigValidationError(path=path, message=f"{where}: expected a positive number of seconds")
    return float(value)


def _require_level(path: Path, value: Any, where: str) -> str:
    level = _require_str(path, value, where).lower()
    if level not in _LOG_LEVELS:
        raise ConfigValidationError(path=path, message=f"{where}: expected one of {', '.join(sorted(_LOG_LEVELS))}")
    return level


def _parse_settings(path: Path, data: dict[str, Any]) -> Settings:
    unknown = set(data) - _ALLOWED_TOP
    if unknown:
        raise ConfigValidationError(path=path, message=_unknown_keys_message(unknown))

    s = Settings(config_path=path)
    if "registry" in data:
        s = replace(s, registry_url=_require_str(path, data["registry"], "registry").rstrip("/"))
    if "paths" in data:
        raw = _require_str_list(path, data["paths"], "paths")
        # Relative entries are relative to the config file.
        s = replace(s, local_paths=tuple((path.parent / Path(p).expanduser()).resolve() for p in raw))
    if "log" in data:
        s = replace(s, log_level=_require_level(path, data["log"], "log"))
    if "timeout" in data:
        s = replace(s, timeout_s=_require_timeout(path, data["timeout"], "timeout"))
    return s


def _apply_env(s: Settings, env: Mapping[str, str]) -> Settings:
    origin = Path("<environment>")
    if env.get("BATTERYPACK_REGISTRY_URL"):
        s = replace(s, registry_url=env["BATTERYPACK_REGISTRY_URL"].rstrip("/"))
    if env.get("BATTERYPACK_PATH"):
        extra = tuple(Path(p).expanduser().resolve() for p in env["BATTERYPACK_PATH"].split(os.pathsep) if p)
        s = replace(s, local_paths=extra + s.local_paths)
    if env.get("BATTERYPACK_LOG"):
        s = replace(s, log_level=_require_level(origin, env["BATTERYPACK_LOG"], "BATTERYPACK_LOG"))
    if env.get("BATTERYPACK_TIMEOUT"):
        try:
            value: Any = float(env["BATTERYPACK_TIMEOUT"])
        except ValueError:
            value = env["BATTERYPACK_TIMEOUT"]
        s = replace(s, timeout_s=_require_timeout(origin, value, "BATTERYPACK_TIMEOUT"))
    return s


def load_settings(path: Path | None = None, *, env: Mapping[str, str] | None = None) -> Settings:
    """Load the settings file (if any) and apply environment overrides."""

    p = path or paths.config_path()
    if p.exists():
        s = _parse_settings(p, _load_toml(p))
        logger.debug("loaded settings from %s", p)
    else:
        if path is not None:
            raise ConfigValidationError(path=p, message="file not found")
        s = Settings()
    return _apply_env(s, os.environ if env is None else env)
