from __future__ import annotations

import pytest

from batterypack.resolver import (
    higher_version,
    is_older,
    parse_semver,
    pick_highest_satisfying,
    requirement_floor,
    satisfies,
)


def test_parse_semver() -> None:
    assert parse_semver("1.2.3").major == 1
    assert parse_semver("1.0.0-rc.1").pre == ("rc", "1")
    with pytest.raises(ValueError):
        parse_semver("1.2")


def test_prerelease_sorts_before_release() -> None:
    assert parse_semver("1.0.0-rc.1") < parse_semver("1.0.0")
    assert parse_semver("1.0.0-alpha") < parse_semver("1.0.0-beta")


def test_bare_versions_are_caret_requirements() -> None:
    assert satisfies(parse_semver("1.5.0"), "1.2.3")
    assert not satisfies(parse_semver("2.0.0"), "1.2.3")
    assert satisfies(parse_semver("0.3.9"), "^0.3")
    assert not satisfies(parse_semver("0.4.0"), "^0.3")
    assert satisfies(parse_semver("1.2.3"), "=1.2.3")
    assert not satisfies(parse_semver("1.2.4"), "=1.2.3")


def test_pick_highest_satisfying() -> None:
    versions = ["1.2.3", "1.4.0", "2.0.0", "2.1.0-beta"]
    assert pick_highest_satisfying(versions, "^1.2.3") == "1.4.0"
    assert pick_highest_satisfying(versions, "=1.2.3") == "1.2.3"
    assert pick_highest_satisfying(versions, "^3.0.0") is None
    assert pick_highest_satisfying(versions) == "2.0.0"


def test_requirement_floor_handles_shorthand_and_operators() -> None:
    assert requirement_floor("4") == parse_semver("4.0.0")
    assert requirement_floor("^4.5") == parse_semver("4.5.0")
    assert requirement_floor(">=1.2, <2") == parse_semver("1.2.0")
    assert requirement_floor("*") == parse_semver("0.0.0")


def test_is_older_is_strict() -> None:
    assert is_older("4.3", "4.5")
    assert not is_older("4.6", "4.5")
    assert not is_older("4.5", "4.5.0")
    assert not is_older("git-main", "4.5")


def test_higher_version_is_order_independent() -> None:
    assert higher_version("1.2.0", "2.0.0") == "2.0.0"
    assert higher_version("2.0.0", "1.2.0") == "2.0.0"
    assert higher_version("1.2", "1.2.0") == higher_version("1.2.0", "1.2")
