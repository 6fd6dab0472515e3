from __future__ import annotations

import json
from pathlib import Path
from urllib.error import HTTPError

import pytest

from batterypack import registry
from batterypack.errors import FetchError, NotFoundError, SpecError
from batterypack.registry import fetch_pack, fetch_pack_spec, find_packs


def _manifest(name: str, version: str) -> str:
    return f'[package]\nname = "{name}"\nversion = "{version}"\n\n[dependencies]\nclap = "4.5"\n'


def _registry(tmp_path: Path) -> str:
    reg = tmp_path / "reg"
    reg.mkdir()
    (reg / "index.json").write_text(
        json.dumps(
            {
                "packs": [
                    {"name": "error-battery-pack", "version": "0.2.0", "description": "Errors"},
                    {"name": "cli-battery-pack", "version": "0.3.0", "description": "CLI essentials"},
                ]
            }
        ),
        encoding="utf-8",
    )

    cli = reg / "cli-battery-pack"
    for v in ("0.2.0", "0.3.0", "0.4.0-beta", "0.5.0"):
        (cli / v).mkdir(parents=True)
        (cli / v / "Cargo.toml").write_text(_manifest("cli-battery-pack", v), encoding="utf-8")
    (cli / "versions.json").write_text(
        json.dumps({"versions": {"0.2.0": {}, "0.3.0": {}, "0.4.0-beta": {}, "0.5.0": {"yanked": True}}}),
        encoding="utf-8",
    )

    err = reg / "error-battery-pack"
    err.mkdir()
    (err / "Cargo.toml").write_text(_manifest("error-battery-pack", "0.2.0"), encoding="utf-8")
    return reg.as_uri()


def test_find_packs_sorts_and_filters(tmp_path: Path) -> None:
    base = _registry(tmp_path)

    assert [p.name for p in find_packs(base_url=base)] == ["cli-battery-pack", "error-battery-pack"]
    only = find_packs("ERR", base_url=base)
    assert [p.short_name for p in only] == ["error"]
    assert only[0].description == "Errors"


def test_fetch_picks_highest_release_and_skips_yanked(tmp_path: Path) -> None:
    base = _registry(tmp_path)

    rp = fetch_pack("cli-battery-pack", base_url=base)
    assert rp.version == "0.3.0"
    assert rp.spec.version == "0.3.0"
    assert rp.local_root == tmp_path / "reg" / "cli-battery-pack" / "0.3.0"

    assert fetch_pack("cli-battery-pack", "^0.2", base_url=base).version == "0.2.0"


def test_fetch_without_versions_index_uses_single_manifest(tmp_path: Path) -> None:
    base = _registry(tmp_path)
    spec = fetch_pack_spec("error-battery-pack", base_url=base)
    assert spec.name == "error-battery-pack"

    with pytest.raises(NotFoundError):
        fetch_pack_spec("error-battery-pack", "^1", base_url=base)


def test_unknown_pack_and_unmatched_version_are_not_found(tmp_path: Path) -> None:
    base = _registry(tmp_path)
    with pytest.raises(NotFoundError) as exc:
        fetch_pack("nope-battery-pack", base_url=base)
    assert "nope-battery-pack" in str(exc.value)

    with pytest.raises(NotFoundError):
        fetch_pack("cli-battery-pack", "^9", base_url=base)


def test_name_mismatch_is_a_spec_error(tmp_path: Path) -> None:
    base = _registry(tmp_path)
    (tmp_path / "reg" / "error-battery-pack" / "Cargo.toml").write_text(
        _manifest("other-battery-pack", "0.2.0"), encoding="utf-8"
    )
    with pytest.raises(SpecError):
        fetch_pack("error-battery-pack", base_url=base)


def test_malformed_index_is_a_fetch_error(tmp_path: Path) -> None:
    base = _registry(tmp_path)
    (tmp_path / "reg" / "index.json").write_text('{"packs": "nope"}', encoding="utf-8")
    with pytest.raises(FetchError):
        find_packs(base_url=base)


def test_http_errors_map_to_taxonomy(monkeypatch) -> None:
    def boom(code: int):
        def _open(url, timeout=None):
            raise HTTPError(url, code, "err", None, None)  # type: ignore[arg-type]

        return _open

    monkeypatch.setattr(registry, "urlopen", boom(500))
    with pytest.raises(FetchError) as exc:
        find_packs(base_url="https://example.invalid")
    assert "HTTP 500" in str(exc.value)

    monkeypatch.setattr(registry, "urlopen", boom(404))
    with pytest.raises(NotFoundError):
        find_packs(base_url="https://example.invalid")


def test_registry_url_from_environment(monkeypatch, tmp_path: Path) -> None:
    base = _registry(tmp_path)
    monkeypatch.setenv("BATTERYPACK_REGISTRY_URL", base + "/")
    assert registry.registry_base_url() == base
    assert len(find_packs()) == 2
