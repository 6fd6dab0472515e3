from __future__ import annotations

from pathlib import Path

import pytest

from batterypack.config import Settings
from batterypack.errors import ApplyError, FetchError
from batterypack.manifest import Manifest
from batterypack.models import DepKind, PackDetail, PackSummary
from batterypack.pack import parse_pack_spec
from batterypack.sources import PackSource
from batterypack.tui import events as ev
from batterypack.tui.runner import Loaders, Runner
from batterypack.tui.screens import (
    AddPayload,
    AddTarget,
    CreateTarget,
    Committed,
    DetailTarget,
    Discarded,
    ListTarget,
    pack_rows,
)
from batterypack.tui.session import Session


PACK = """[package]
name = "cli-battery-pack"
version = "0.3.0"

[package.metadata.battery.templates]
default = { path = "templates/simple" }

[dependencies]
clap = { version = "4.5", features = ["derive"] }
indicatif = { version = "0.17", optional = true }

[features]
indicators = ["indicatif"]
"""

APP = '[package]\nname = "app"\nversion = "0.1.0"\n'


class FakeLoader:
    def __init__(self, fail: Exception | None = None) -> None:
        self.fail = fail
        self.calls: list = []

    def __call__(self, target):
        self.calls.append(target)
        if self.fail is not None:
            raise self.fail
        spec = parse_pack_spec(PACK)
        if isinstance(target, ListTarget):
            return [PackSummary(name=spec.name, version=spec.version)]
        if isinstance(target, DetailTarget):
            return PackDetail(name=spec.name, version=spec.version, crates=("clap", "indicatif"))
        if isinstance(target, AddTarget):
            return AddPayload(packs=(), focus=pack_rows(spec))
        raise AssertionError(f"unexpected target {target!r}")


def test_scripted_run_adds_pack_from_detail_view() -> None:
    session = Session(Manifest.load(APP))
    loader = FakeLoader()

    # list -> detail -> "Add to project" -> browse view of the pack -> installed -> apply
    Runner(session, loader).run([ev.ENTER, ev.DOWN, ev.ENTER, ev.ENTER, ev.ENTER])

    assert isinstance(session.screen, Committed)
    assert session.committed is not None
    assert loader.calls == [ListTarget(), DetailTarget("cli-battery-pack"), AddTarget(focus="cli-battery-pack")]

    clap = session.model.get_dependency(DepKind.RUNTIME, "clap")
    assert clap is not None and clap.version == "4.5"
    assert session.model.get_dependency(DepKind.RUNTIME, "indicatif") is None
    assert session.model.get_registration("cli-battery-pack").version == "0.3.0"


def test_open_action_calls_browser() -> None:
    opened: list[str] = []
    session = Session(Manifest.load(APP))

    Runner(session, FakeLoader(), open_url=opened.append).run([ev.ENTER, ev.ENTER])

    assert opened == ["https://crates.io/crates/cli-battery-pack"]
    assert session.committed is None


def test_failed_load_then_escape_quits() -> None:
    session = Session(Manifest.load(APP))
    loader = FakeLoader(fail=FetchError(url="file:///reg/index.json", message="no such file"))

    Runner(session, loader).run([ev.ENTER, ev.ESC])

    # ENTER retried the fetch once before ESC gave up.
    assert loader.calls == [ListTarget(), ListTarget()]
    assert isinstance(session.screen, Discarded)
    assert session.committed is None


def test_run_stops_when_script_runs_out() -> None:
    session = Session(Manifest.load(APP))
    Runner(session, FakeLoader()).run([])
    assert not session.done


# ----------------------------------------------------------------------
# Loaders against real packs on disk
# ----------------------------------------------------------------------


def _local_pack(root: Path) -> Path:
    pack = root / "cli-battery-pack"
    tmpl = pack / "templates" / "simple"
    (tmpl / "src").mkdir(parents=True)
    (pack / "Cargo.toml").write_text(PACK, encoding="utf-8")
    (tmpl / "Cargo.toml").write_text('[package]\nname = "{{project-name}}"\nversion = "0.1.0"\n', encoding="utf-8")
    (tmpl / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
    return pack


def _source(tmp_path: Path) -> PackSource:
    _local_pack(tmp_path / "packs")
    return PackSource(settings=Settings(registry_url="file:///nonexistent", local_paths=(tmp_path / "packs",)))


def test_loaders_build_rows_for_installed_and_focused_packs(tmp_path: Path) -> None:
    model = Manifest.load(
        APP
        + '\n[package.metadata.battery-pack]\ncli-battery-pack = { version = "0.3.0", features = ["default", "indicators"] }\n'
        + '\n[dependencies]\nclap = { version = "4.5", features = ["derive"] }\n\n[dev-dependencies]\nindicatif = "0.17"\n'
    )
    session = Session(model)
    loaders = Loaders(_source(tmp_path), session, cwd=tmp_path)

    payload = loaders.load(AddTarget(focus="cli-battery-pack"))

    [rows] = payload.packs
    assert rows.installed and rows.registered_version == "0.3.0"
    assert {g.name: g.enabled for g in rows.groups} == {"default": True, "indicators": True}
    assert {c.name: (c.enabled, c.kind) for c in rows.entries} == {
        "clap": (True, DepKind.RUNTIME),
        "indicatif": (True, DepKind.DEV),
    }
    assert payload.focus is not None and payload.focus.name == "cli-battery-pack"


def test_loaders_create_project_from_template(tmp_path: Path) -> None:
    session = Session(Manifest.load(APP))
    loaders = Loaders(_source(tmp_path), session, cwd=tmp_path)

    dest = loaders.load(CreateTarget(pack="cli-battery-pack", template=None, directory="out", name="my-app"))

    assert dest == (tmp_path / "out" / "my-app").resolve()
    assert 'name = "my-app"' in (dest / "Cargo.toml").read_text(encoding="utf-8")
    assert (dest / "src" / "main.rs").is_file()


def test_loaders_reject_invalid_project_name(tmp_path: Path) -> None:
    loaders = Loaders(_source(tmp_path), Session(Manifest.load(APP)), cwd=tmp_path)
    with pytest.raises(ApplyError):
        loaders.load(CreateTarget(pack="cli-battery-pack", template=None, directory=".", name="bad name"))
