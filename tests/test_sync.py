from __future__ import annotations

import pytest

from batterypack.errors import ApplyError
from batterypack.manifest import Manifest
from batterypack.models import DepKind, PackRegistration, ResolvedDependency
from batterypack.pack import parse_pack_spec
from batterypack.sync import Action, Change, ChangeSet, RegisterPack, apply, merge_recommendations, plan_add, plan_add_many, plan_sync


CLAP_PACK = """[package]
name = "cli-battery-pack"
version = "0.3.0"

[dependencies]
clap = "4.5"
"""

DEV_PACK = """[package]
name = "test-battery-pack"
version = "0.1.0"

[dev-dependencies]
clap = "4"
dialoguer = "0.11"
indicatif = { version = "0.17", optional = true }

[features]
default = ["clap", "dialoguer"]
"""

EMPTY = '[package]\nname = "app"\nversion = "0.1.0"\n'


def _app(deps: str) -> Manifest:
    return Manifest.load(EMPTY + "\n[dependencies]\n" + deps)


def _reg(name: str, *features: str) -> PackRegistration:
    return PackRegistration(name=name, version="0.3.0", features=features or ("default",))


def _rec(version: str, kind: DepKind = DepKind.RUNTIME, *features: str) -> ResolvedDependency:
    return ResolvedDependency(name="d", version=version, kind=kind, features=frozenset(features))


def test_sync_bumps_older_version() -> None:
    spec = parse_pack_spec(CLAP_PACK)
    cs = plan_sync([_reg(spec.name)], {spec.name: spec}, _app('clap = "4.3"\n'))

    assert [(c.action, c.dependency, c.version) for c in cs] == [(Action.BUMP_VERSION, "clap", "4.5")]


def test_sync_leaves_newer_and_equal_versions_alone() -> None:
    spec = parse_pack_spec(CLAP_PACK)
    for current in ("4.6", "4.5", "4.5.0"):
        cs = plan_sync([_reg(spec.name)], {spec.name: spec}, _app(f'clap = "{current}"\n'))
        assert cs.is_empty(), current


def test_sync_adds_missing_features_and_crates_but_never_removes() -> None:
    spec = parse_pack_spec(
        """[package]
name = "cli-battery-pack"
version = "0.3.0"

[dependencies]
clap = { version = "4.5", features = ["derive"] }
dialoguer = "0.11"
indicatif = { version = "0.17", optional = true }

[features]
default = ["clap", "dialoguer"]
indicators = ["indicatif"]
"""
    )
    model = _app('clap = { version = "4.6", features = ["env"] }\nregex = "1"\n')
    cs = plan_sync([_reg(spec.name)], {spec.name: spec}, model)

    assert Action.REMOVE not in cs.actions()
    assert [(c.action, c.dependency) for c in cs] == [
        (Action.ADD_FEATURES, "clap"),
        (Action.ADD, "dialoguer"),
    ]
    assert cs.changes[0].features == {"derive"}


def test_sync_tracks_individually_added_crates() -> None:
    spec = parse_pack_spec(
        """[package]
name = "cli-battery-pack"
version = "0.3.0"

[dependencies]
clap = "4.5"
indicatif = { version = "0.17.8", optional = true }
"""
    )
    model = _app('clap = "4.5"\nindicatif = "0.17.0"\n')
    cs = plan_sync([_reg(spec.name)], {spec.name: spec}, model)

    assert [(c.action, c.dependency, c.version) for c in cs] == [(Action.BUMP_VERSION, "indicatif", "0.17.8")]


def test_sync_syncs_crate_in_the_table_it_lives_in() -> None:
    spec = parse_pack_spec(CLAP_PACK)
    model = Manifest.load(EMPTY + '\n[dev-dependencies]\nclap = "4.0"\n')
    cs = plan_sync([_reg(spec.name)], {spec.name: spec}, model)

    assert [(c.action, c.kind) for c in cs] == [(Action.BUMP_VERSION, DepKind.DEV)]


def test_sync_skips_packs_without_a_spec() -> None:
    assert plan_sync([_reg("gone-battery-pack")], {}, _app('clap = "4.3"\n')).is_empty()


@pytest.mark.parametrize("order", [0, 1])
def test_conflicting_versions_pick_the_higher_one(order: int) -> None:
    recs = [("a-battery-pack", {"d": _rec("1.2.0")}), ("b-battery-pack", {"d": _rec("2.0.0")})]
    if order:
        recs.reverse()
    merged = merge_recommendations(recs)
    assert merged["d"].version == "2.0.0"


def test_conflicting_features_union() -> None:
    merged = merge_recommendations(
        [("a-battery-pack", {"d": _rec("1", DepKind.RUNTIME, "x")}), ("b-battery-pack", {"d": _rec("1", DepKind.RUNTIME, "y")})]
    )
    assert merged["d"].features == {"x", "y"}
    assert merged["d"].packs == ("a-battery-pack", "b-battery-pack")


@pytest.mark.parametrize(
    ("kinds", "placed"),
    [
        ((DepKind.DEV, DepKind.RUNTIME), (DepKind.RUNTIME,)),
        ((DepKind.BUILD, DepKind.RUNTIME), (DepKind.RUNTIME,)),
        ((DepKind.DEV, DepKind.BUILD), (DepKind.DEV, DepKind.BUILD)),
        ((DepKind.DEV, DepKind.DEV), (DepKind.DEV,)),
    ],
)
def test_kind_placement(kinds: tuple[DepKind, DepKind], placed: tuple[DepKind, ...]) -> None:
    merged = merge_recommendations([("a-battery-pack", {"d": _rec("1", kinds[0])}), ("b-battery-pack", {"d": _rec("1", kinds[1])})])
    assert merged["d"].kinds == placed


def test_plan_add_dev_dependencies_scenario() -> None:
    spec = parse_pack_spec(DEV_PACK)
    cs = plan_add(spec, ["default"], Manifest.load(EMPTY))

    assert [(c.action, c.dependency, c.kind) for c in cs] == [
        (Action.ADD, "clap", DepKind.DEV),
        (Action.ADD, "dialoguer", DepKind.DEV),
    ]


def test_plan_add_only_adds_missing_features_to_present_crates() -> None:
    spec = parse_pack_spec(
        '[package]\nname = "x-battery-pack"\nversion = "1.0.0"\n\n[dependencies]\nserde = { version = "1.0.100", features = ["derive"] }\n'
    )
    cs = plan_add(spec, ["default"], _app('serde = "1.0.200"\n'))
    assert [(c.action, c.features) for c in cs] == [(Action.ADD_FEATURES, {"derive"})]


def test_plan_add_with_kind_override() -> None:
    spec = parse_pack_spec(DEV_PACK)
    cs = plan_add(spec, ["default"], Manifest.load(EMPTY), only=["clap"], kinds={"clap": DepKind.RUNTIME})
    assert [(c.dependency, c.kind) for c in cs] == [("clap", DepKind.RUNTIME)]


def test_apply_writes_changes_and_registration() -> None:
    spec = parse_pack_spec(DEV_PACK)
    model = Manifest.load(EMPTY)
    cs = plan_add(spec, ["default"], model).with_registration(
        RegisterPack(pack=spec.name, version=spec.version, features=("default",))
    )
    new = apply(cs, model)

    assert model.serialize() == EMPTY
    text = new.serialize()
    assert '[dev-dependencies]\nclap = "4"\ndialoguer = "0.11"\n' in text
    assert '[build-dependencies]\ntest-battery-pack = "0.1.0"\n' in text
    assert '[package.metadata.battery-pack]\ntest-battery-pack = "0.1.0"\n' in text
    assert new.get_registration(spec.name).features == ("default",)


def test_apply_is_idempotent_for_same_plan() -> None:
    spec = parse_pack_spec(DEV_PACK)
    model = apply(plan_add(spec, ["default"], Manifest.load(EMPTY)), Manifest.load(EMPTY))
    assert plan_add(spec, ["default"], model).is_empty()


def test_apply_failure_leaves_model_untouched() -> None:
    model = _app('clap = "4.6"\n')
    before = model.serialize()
    bad = Change(pack="p", dependency="clap", kind=DepKind.RUNTIME, action=Action.BUMP_VERSION, version="4.0")
    cs = ChangeSet(
        changes=(
            Change(pack="p", dependency="regex", kind=DepKind.RUNTIME, action=Action.ADD, version="1"),
            bad,
        )
    )

    with pytest.raises(ApplyError) as exc:
        apply(cs, model)

    assert exc.value.change == bad
    assert "downgrade" in str(exc.value)
    assert model.serialize() == before


def test_apply_rejects_changes_to_absent_dependencies() -> None:
    cs = ChangeSet(changes=(Change(pack="p", dependency="nope", kind=DepKind.DEV, action=Action.ADD_FEATURES, features=frozenset({"x"})),))
    with pytest.raises(ApplyError):
        apply(cs, Manifest.load(EMPTY))


def test_apply_remove() -> None:
    cs = ChangeSet(changes=(Change(pack="p", dependency="clap", kind=DepKind.RUNTIME, action=Action.REMOVE),))
    new = apply(cs, _app('clap = "4"\nregex = "1"\n'))
    assert new.get_dependency(DepKind.RUNTIME, "clap") is None
    assert new.get_dependency(DepKind.RUNTIME, "regex") is not None


def test_plan_add_many_merges_across_packs() -> None:
    recs = [
        ("a-battery-pack", {"d": _rec("1.2.0", DepKind.DEV)}),
        ("b-battery-pack", {"d": _rec("2.0.0", DepKind.BUILD)}),
    ]
    cs = plan_add_many(recs, Manifest.load(EMPTY))
    assert [(c.kind, c.version) for c in cs] == [(DepKind.DEV, "2.0.0"), (DepKind.BUILD, "2.0.0")]


def test_describe_lines() -> None:
    cs = ChangeSet(
        changes=(Change(pack="p", dependency="clap", kind=DepKind.RUNTIME, action=Action.BUMP_VERSION, version="4.5"),),
        registrations=(RegisterPack(pack="cli-battery-pack", version="0.3.0", features=("default",)),),
    )
    assert cs.describe() == [
        "bump clap to 4.5 in [dependencies]",
        "register cli-battery-pack (features: default)",
    ]
