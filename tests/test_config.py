from __future__ import annotations

import os
import re
from pathlib import Path

import pytest

from batterypack.config import Settings, load_settings
from batterypack.errors import ConfigValidationError, ParseError
from batterypack.registry import DEFAULT_REGISTRY_URL


def test_defaults_without_config_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("BATTERYPACK_HOME", str(tmp_path))
    s = load_settings(env={})
    assert s == Settings()
    assert s.registry_url == DEFAULT_REGISTRY_URL


def test_config_file_parses(tmp_path: Path) -> None:
    p = tmp_path / "config.toml"
    p.write_text('registry = "https://example.com/reg/"\npaths = ["packs"]\nlog = "DEBUG"\ntimeout = 3\n', encoding="utf-8")

    s = load_settings(p, env={})

    assert s.registry_url == "https://example.com/reg"
    assert s.local_paths == ((tmp_path / "packs").resolve(),)
    assert s.log_level == "debug"
    assert s.timeout_s == 3.0
    assert s.config_path == p


def test_environment_overrides_file(tmp_path: Path) -> None:
    p = tmp_path / "config.toml"
    p.write_text('registry = "https://example.com/reg"\npaths = ["packs"]\n', encoding="utf-8")

    s = load_settings(
        p,
        env={
            "BATTERYPACK_REGISTRY_URL": "file:///srv/reg",
            "BATTERYPACK_PATH": os.pathsep.join([str(tmp_path / "a"), str(tmp_path / "b")]),
            "BATTERYPACK_LOG": "warning",
            "BATTERYPACK_TIMEOUT": "2.5",
        },
    )

    assert s.registry_url == "file:///srv/reg"
    assert s.local_paths == ((tmp_path / "a").resolve(), (tmp_path / "b").resolve(), (tmp_path / "packs").resolve())
    assert s.log_level == "warning"
    assert s.timeout_s == 2.5


@pytest.mark.parametrize(
    ("text", "needle"),
    [
        ("colour = true\n", "unknown keys: colour"),
        ("paths = \"packs\"\n", "paths: expected list of strings"),
        ("timeout = 0\n", "timeout: expected a positive number"),
        ("timeout = true\n", "timeout: expected a positive number"),
        ('log = "loud"\n', "log: expected one of"),
    ],
)
def test_invalid_settings_are_rejected(tmp_path: Path, text: str, needle: str) -> None:
    p = tmp_path / "config.toml"
    p.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigValidationError) as exc:
        load_settings(p, env={})
    assert needle in str(exc.value)


def test_invalid_env_value_is_rejected(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("BATTERYPACK_HOME", str(tmp_path))
    with pytest.raises(ConfigValidationError) as exc:
        load_settings(env={"BATTERYPACK_TIMEOUT": "soon"})
    assert "BATTERYPACK_TIMEOUT" in str(exc.value)


def test_invalid_toml_surfaces_location(tmp_path: Path) -> None:
    p = tmp_path / "config.toml"
    p.write_text("registry =\n", encoding="utf-8")

    with pytest.raises(ParseError) as exc:
        load_settings(p, env={})

    msg = str(exc.value)
    assert "Invalid TOML in" in msg
    assert str(p) in msg
    assert re.search(r"\(line \d+, column \d+\)$", msg)


def test_explicit_missing_config_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError):
        load_settings(tmp_path / "missing.toml", env={})
