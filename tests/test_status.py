from __future__ import annotations

from batterypack.manifest import Manifest
from batterypack.models import DepKind
from batterypack.pack import parse_pack_spec
from batterypack.sync import Action
from batterypack.status import project_status


PACK = """[package]
name = "cli-battery-pack"
version = "0.4.0"

[dependencies]
clap = { version = "4.5", features = ["derive"] }
dialoguer = "0.11"
"""


def test_status_reports_drift_and_newer_pack() -> None:
    spec = parse_pack_spec(PACK)
    model = Manifest.load(
        """[package]
name = "app"
version = "0.1.0"

[package.metadata.battery-pack]
cli-battery-pack = "0.3.0"

[dependencies]
clap = "4.3"
"""
    )

    [st] = project_status(model, {spec.name: spec})

    assert st.registered_version == "0.3.0"
    assert st.available_version == "0.4.0"
    assert st.pack_outdated
    assert not st.up_to_date
    assert [(d.dependency, d.action) for d in st.drift] == [
        ("clap", Action.BUMP_VERSION),
        ("clap", Action.ADD_FEATURES),
        ("dialoguer", Action.ADD),
    ]
    assert [d.describe() for d in st.drift] == [
        "clap: 4.3 -> 4.5",
        "clap: missing features derive",
        "dialoguer: missing (recommended 0.11)",
    ]


def test_unregistered_build_dependency_pack_tracks_default_group() -> None:
    spec = parse_pack_spec(PACK.replace('version = "0.4.0"', 'version = "0.3.0"'))
    model = Manifest.load(
        """[package]
name = "app"
version = "0.1.0"

[dependencies]
clap = { version = "4.5", features = ["derive"] }
dialoguer = "0.11"

[build-dependencies]
cli-battery-pack = "0.3.0"
"""
    )

    [st] = project_status(model, {spec.name: spec})
    assert st.registered_version == "0.3.0"
    assert st.up_to_date
    assert model.get_dependency(DepKind.BUILD, "cli-battery-pack") is not None


def test_pack_without_spec_is_listed_as_unavailable() -> None:
    model = Manifest.load('[package]\nname = "app"\nversion = "0.1.0"\n\n[build-dependencies]\ngone-battery-pack = "1"\n')
    [st] = project_status(model, {})
    assert st.available_version is None
    assert st.drift == ()
