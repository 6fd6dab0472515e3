from __future__ import annotations

import io
import json
import sys
from pathlib import Path

import pytest

from batterypack.cli import main
from batterypack.manifest import Manifest
from batterypack.models import DepKind


PACK = """[package]
name = "cli-battery-pack"
version = "0.3.0"

[package.metadata.battery.templates]
default = { path = "templates/simple", description = "A minimal CLI" }

[dependencies]
clap = { version = "4.5", features = ["derive"] }
indicatif = { version = "0.17", optional = true }

[features]
indicators = ["indicatif"]
"""

APP = '[package]\nname = "app"\nversion = "0.1.0"\n'

REGISTERED = APP + '\n[package.metadata.battery-pack]\ncli-battery-pack = "0.3.0"\n\n[dependencies]\nclap = "4.3"\n'


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    pack = tmp_path / "packs" / "cli-battery-pack"
    tmpl = pack / "templates" / "simple"
    (tmpl / "src").mkdir(parents=True)
    (pack / "Cargo.toml").write_text(PACK, encoding="utf-8")
    (tmpl / "Cargo.toml").write_text('[package]\nname = "{{project-name}}"\nversion = "0.1.0"\n', encoding="utf-8")
    (tmpl / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")

    reg = tmp_path / "reg"
    reg.mkdir()
    (reg / "index.json").write_text(
        json.dumps({"packs": [{"name": "error-battery-pack", "version": "0.2.0", "description": "Error handling"}]}),
        encoding="utf-8",
    )

    app = tmp_path / "app"
    app.mkdir()
    (app / "Cargo.toml").write_text(APP, encoding="utf-8")

    monkeypatch.setenv("BATTERYPACK_ROOT", str(app))
    monkeypatch.setenv("BATTERYPACK_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("BATTERYPACK_PATH", str(tmp_path / "packs"))
    monkeypatch.setenv("BATTERYPACK_REGISTRY_URL", reg.as_uri())
    monkeypatch.delenv("BATTERYPACK_LOG", raising=False)
    monkeypatch.delenv("BATTERYPACK_TIMEOUT", raising=False)
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    return app


def _manifest(app: Path) -> Manifest:
    return Manifest.load((app / "Cargo.toml").read_text(encoding="utf-8"))


def test_add_dry_run_prints_plan_and_leaves_manifest(project: Path, capsys) -> None:
    assert main(["add", "cli", "-F", "indicators", "--dry-run"]) == 0

    out = capsys.readouterr().out.splitlines()
    assert "would add clap (4.5, features: derive) to [dependencies]" in out
    assert "would add indicatif (0.17) to [dependencies]" in out
    assert "would register cli-battery-pack (features: default, indicators)" in out
    assert (project / "Cargo.toml").read_text(encoding="utf-8") == APP


def test_add_writes_crates_build_dependency_and_registration(project: Path, capsys) -> None:
    assert main(["add", "cli-battery-pack", "-F", "indicators"]) == 0
    assert capsys.readouterr().out.startswith(f"updated {project.resolve() / 'Cargo.toml'}")

    m = _manifest(project)
    clap = m.get_dependency(DepKind.RUNTIME, "clap")
    assert clap.version == "4.5" and clap.features == frozenset({"derive"})
    assert m.get_dependency(DepKind.RUNTIME, "indicatif").version == "0.17"
    assert m.get_dependency(DepKind.BUILD, "cli-battery-pack").version == "0.3.0"
    assert m.get_registration("cli-battery-pack").features == ("default", "indicators")


def test_add_without_terminal_uses_default_group(project: Path) -> None:
    assert main(["add", "cli"]) == 0

    m = _manifest(project)
    assert m.get_dependency(DepKind.RUNTIME, "clap") is not None
    assert m.get_dependency(DepKind.RUNTIME, "indicatif") is None
    assert m.get_registration("cli-battery-pack").features == ("default",)


def test_add_named_crates_reports_unknown_ones(project: Path, capsys) -> None:
    assert main(["add", "cli", "indicatif", "nope"]) == 0

    out = capsys.readouterr().out
    assert "error: crate 'nope' not found. Available crates: clap, indicatif" in out
    m = _manifest(project)
    assert m.get_dependency(DepKind.RUNTIME, "indicatif") is not None
    assert m.get_dependency(DepKind.RUNTIME, "clap") is None

    assert main(["add", "cli", "nope"]) == 3


def test_add_unknown_pack(project: Path, capsys) -> None:
    assert main(["add", "missing"]) == 3
    assert "error: pack 'missing-battery-pack' not found" in capsys.readouterr().out


def test_add_to_virtual_manifest_needs_workspace_target(project: Path, capsys) -> None:
    (project / "Cargo.toml").write_text('[workspace]\nmembers = []\n', encoding="utf-8")
    assert main(["add", "cli", "-F", "default"]) == 2
    assert "virtual workspace manifest" in capsys.readouterr().out


def test_sync_bumps_then_has_nothing_to_do(project: Path, capsys) -> None:
    (project / "Cargo.toml").write_text(REGISTERED, encoding="utf-8")

    assert main(["sync", "--dry-run"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out == [
        "would bump clap to 4.5 in [dependencies]",
        "would add features derive to clap in [dependencies]",
    ]

    assert main(["sync"]) == 0
    clap = _manifest(project).get_dependency(DepKind.RUNTIME, "clap")
    assert clap.version == "4.5" and clap.features == frozenset({"derive"})

    capsys.readouterr()
    assert main(["sync"]) == 0
    assert capsys.readouterr().out.strip() == "Nothing to do."


def test_sync_tracks_pack_installed_only_as_build_dependency(project: Path, capsys) -> None:
    (project / "Cargo.toml").write_text(
        APP + '\n[dependencies]\nclap = "4.3"\n\n[build-dependencies]\ncli-battery-pack = "0.3.0"\n',
        encoding="utf-8",
    )

    assert main(["sync"]) == 0
    assert "No battery packs registered." not in capsys.readouterr().out

    m = _manifest(project)
    clap = m.get_dependency(DepKind.RUNTIME, "clap")
    assert clap.version == "4.5" and clap.features == frozenset({"derive"})
    assert m.get_dependency(DepKind.RUNTIME, "indicatif") is None
    assert m.registrations() == []


def test_sync_without_registrations(project: Path, capsys) -> None:
    assert main(["sync"]) == 0
    assert capsys.readouterr().out.strip() == "No battery packs registered."


def test_enable_adds_group_and_updates_registration(project: Path) -> None:
    (project / "Cargo.toml").write_text(REGISTERED, encoding="utf-8")

    assert main(["enable", "indicators"]) == 0

    m = _manifest(project)
    assert m.get_dependency(DepKind.RUNTIME, "indicatif") is not None
    assert m.get_registration("cli-battery-pack").features == ("default", "indicators")
    assert m.get_dependency(DepKind.BUILD, "cli-battery-pack") is None


def test_enable_unknown_feature(project: Path, capsys) -> None:
    (project / "Cargo.toml").write_text(REGISTERED, encoding="utf-8")
    assert main(["enable", "colour"]) == 3
    assert "feature 'colour' not found" in capsys.readouterr().out


def test_list_merges_local_and_registry_packs(project: Path, capsys) -> None:
    assert main(["list"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert [line.split()[0] for line in lines] == ["cli", "error"]
    assert "0.3.0" in lines[0]
    assert lines[1].endswith("Error handling")

    assert main(["list", "err"]) == 0
    assert [line.split()[0] for line in capsys.readouterr().out.splitlines()] == ["error"]


def test_show_describes_crates_groups_and_templates(project: Path, capsys) -> None:
    assert main(["show", "cli"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0] == "cli-battery-pack 0.3.0"
    assert "  clap (4.5, features: derive)  [default]" in out
    assert "  indicatif (0.17)  [indicators]" in out
    assert "  indicators: indicatif" in out
    assert "  default - A minimal CLI" in out


def test_new_creates_project_from_template(project: Path, tmp_path: Path, capsys) -> None:
    assert main(["new", "cli", "--name", "my-app", "--dir", str(tmp_path / "out")]) == 0

    dest = (tmp_path / "out" / "my-app").resolve()
    assert capsys.readouterr().out.strip() == f"created {dest}"
    assert 'name = "my-app"' in (dest / "Cargo.toml").read_text(encoding="utf-8")

    assert main(["new", "cli"]) == 2


class _Terminal(io.StringIO):
    def isatty(self) -> bool:
        return True


def test_new_prompts_for_name_on_a_terminal(project: Path, tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "stdin", _Terminal("prompted-app\n"))

    assert main(["new", "cli", "--dir", str(tmp_path / "out")]) == 0

    dest = (tmp_path / "out" / "prompted-app").resolve()
    assert capsys.readouterr().out.endswith(f"created {dest}\n")
    assert 'name = "prompted-app"' in (dest / "Cargo.toml").read_text(encoding="utf-8")


def test_status_lists_drift(project: Path, capsys) -> None:
    (project / "Cargo.toml").write_text(REGISTERED, encoding="utf-8")

    assert main(["status"]) == 0
    assert capsys.readouterr().out.splitlines() == [
        "cli-battery-pack 0.3.0:",
        "  clap: 4.3 -> 4.5",
        "  clap: missing features derive",
    ]


def test_validate_exit_codes(project: Path, tmp_path: Path, capsys) -> None:
    assert main(["validate", str(tmp_path / "packs" / "cli-battery-pack")]) == 0
    assert "ok" in capsys.readouterr().out

    broken = tmp_path / "broken"
    broken.mkdir()
    (broken / "Cargo.toml").write_text('[workspace]\nmembers = ["packs/*"]\n', encoding="utf-8")
    assert main(["validate", str(broken)]) == 1
    assert "validation failed: 1 error(s)" in capsys.readouterr().out


def test_no_command_without_terminal(project: Path, capsys) -> None:
    assert main([]) == 2
    assert "needs a terminal" in capsys.readouterr().out


def test_invalid_settings_exit_code(project: Path, tmp_path: Path, capsys) -> None:
    home = tmp_path / "home"
    home.mkdir()
    (home / "config.toml").write_text("colour = true\n", encoding="utf-8")

    assert main(["list"]) == 2
    assert "unknown keys: colour" in capsys.readouterr().out


def test_root_flag_selects_project(project: Path, tmp_path: Path, monkeypatch, capsys) -> None:
    other = tmp_path / "other"
    other.mkdir()
    (other / "Cargo.toml").write_text(REGISTERED, encoding="utf-8")

    assert main(["--root", str(other), "status"]) == 0
    assert capsys.readouterr().out.splitlines()[0] == "cli-battery-pack 0.3.0:"
