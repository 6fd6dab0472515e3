"""Sync engine.

Planning is pure: `plan_add` and `plan_sync` read a manifest and pack specs
and return a ChangeSet. `apply` is the only step that edits, and it edits a
clone, so a failure leaves the caller's manifest untouched.

Sync only ever adds and upgrades. It never emits a removal and never lowers
a version the user already has.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, Mapping

from .errors import ApplyError
from .manifest import Manifest
from .models import (
    DepKind,
    DependencyEntry,
    PackRegistration,
    ResolvedDependency,
    Scope,
    version_label,
)
from .pack import PackSpec
from .resolver import higher_version, is_older


logger = logging.getLogger(__name__)


class Action(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    BUMP_VERSION = "bump_version"
    ADD_FEATURES = "add_features"


@dataclass(frozen=True)
class Change:
    pack: str
    dependency: str
    kind: DepKind
    action: Action
    version: str | None = None
    features: frozenset[str] = frozenset()
    deep: bool = False

    def describe(self) -> str:
        table = f"[{self.kind.table}]"
        if self.action is Action.ADD:
            return f"add {self.dependency} {version_label(self.version or '*', self.features)} to {table}"
        if self.action is Action.BUMP_VERSION:
            return f"bump {self.dependency} to {self.version} in {table}"
        if self.action is Action.ADD_FEATURES:
            return f"add features {', '.join(sorted(self.features))} to {self.dependency} in {table}"
        return f"remove {self.dependency} from {table}"

    def __str__(self) -> str:
        return self.describe()


@dataclass(frozen=True)
class RegisterPack:
    pack: str
    version: str | None
    features: tuple[str, ...]
    scope: Scope = Scope.PACKAGE
    build_dependency: bool = True


@dataclass(frozen=True)
class ChangeSet:
    """An ordered list of manifest mutations, applied all-or-nothing."""

    changes: tuple[Change, ...] = ()
    registrations: tuple[RegisterPack, ...] = ()
    use_workspace: bool = False

    def __iter__(self) -> Iterator[Change]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    def is_empty(self) -> bool:
        return not self.changes and not self.registrations

    def actions(self) -> list[Action]:
        return [c.action for c in self.changes]

    def extend(self, other: ChangeSet) -> ChangeSet:
        return ChangeSet(
            changes=self.changes + other.changes,
            registrations=self.registrations + other.registrations,
            use_workspace=self.use_workspace or other.use_workspace,
        )

    def with_registration(self, reg: RegisterPack) -> ChangeSet:
        return ChangeSet(changes=self.changes, registrations=self.registrations + (reg,), use_workspace=self.use_workspace)

    def describe(self) -> list[str]:
        lines = [c.describe() for c in self.changes]
        for r in self.registrations:
            lines.append(f"register {r.pack} (features: {', '.join(r.features) or 'none'})")
        return lines


@dataclass(frozen=True)
class MergedDependency:
    """One dependency recommended by one or more packs, after conflict resolution."""

    name: str
    version: str
    features: frozenset[str]
    kinds: tuple[DepKind, ...]
    packs: tuple[str, ...] = field(default=())


def _placement(kinds: set[DepKind]) -> tuple[DepKind, ...]:
    # Widest visibility wins; a dev/build split lands in both tables.
    if DepKind.RUNTIME in kinds:
        return (DepKind.RUNTIME,)
    return tuple(k for k in (DepKind.DEV, DepKind.BUILD) if k in kinds)


def merge_recommendations(
    recommendations: Iterable[tuple[str, Mapping[str, ResolvedDependency]]],
) -> dict[str, MergedDependency]:
    """Combine per-pack recommendations for the same crate names.

    The higher version wins whatever the order of the packs, features are
    unioned, and placement follows `_placement`.
    """

    versions: dict[str, str] = {}
    features: dict[str, set[str]] = {}
    kinds: dict[str, set[DepKind]] = {}
    packs: dict[str, list[str]] = {}
    for pack, resolved in recommendations:
        for name, dep in resolved.items():
            versions[name] = higher_version(versions[name], dep.version) if name in versions else dep.version
            features.setdefault(name, set()).update(dep.features)
            kinds.setdefault(name, set()).add(dep.kind)
            if pack not in packs.setdefault(name, []):
                packs[name].append(pack)

    out: dict[str, MergedDependency] = {}
    for name in sorted(versions):
        out[name] = MergedDependency(
            name=name,
            version=versions[name],
            features=frozenset(features[name]),
            kinds=_placement(kinds[name]),
            packs=tuple(packs[name]),
        )
    return out


def _owner(md: MergedDependency) -> str:
    return md.packs[0] if md.packs else ""


def plan_add(
    spec: PackSpec,
    selected_groups: Iterable[str],
    model: Manifest,
    *,
    include_all: bool = False,
    only: Iterable[str] | None = None,
    kinds: Mapping[str, DepKind] | None = None,
) -> ChangeSet:
    """Changes that bring the selected groups of one pack into `model`.

    Absent crates are added to the table for their kind; present ones only
    get their missing features. Versions already in the manifest are left
    for `plan_sync`.
    """

    resolved = dict(spec.resolve_group(selected_groups, include_all))
    if only is not None:
        wanted = set(only)
        resolved = {n: d for n, d in resolved.items() if n in wanted}
    if kinds:
        resolved = {
            n: ResolvedDependency(name=n, version=d.version, kind=kinds.get(n, d.kind), features=d.features, optional=d.optional)
            for n, d in resolved.items()
        }
    return plan_add_many([(spec.name, resolved)], model)


def plan_add_many(
    recommendations: Iterable[tuple[str, Mapping[str, ResolvedDependency]]],
    model: Manifest,
) -> ChangeSet:
    changes: list[Change] = []
    for name, md in merge_recommendations(recommendations).items():
        for kind in md.kinds:
            existing = model.get_dependency(kind, name)
            if existing is None:
                changes.append(
                    Change(pack=_owner(md), dependency=name, kind=kind, action=Action.ADD, version=md.version, features=md.features)
                )
                continue
            missing = md.features - existing.features
            if missing:
                changes.append(
                    Change(pack=_owner(md), dependency=name, kind=kind, action=Action.ADD_FEATURES, features=frozenset(missing))
                )
    return ChangeSet(changes=tuple(changes))


def _tracked(spec: PackSpec, reg: PackRegistration, model: Manifest) -> dict[str, ResolvedDependency]:
    """Crates a registration keeps in sync: its active groups, plus any
    other crate of the pack the user added individually."""

    resolved = dict(spec.resolve_group(reg.features))
    for decl in spec.visible_dependencies():
        if decl.name in resolved or not model.find_dependency(decl.name):
            continue
        resolved[decl.name] = ResolvedDependency(
            name=decl.name, version=decl.version, kind=decl.kind, features=decl.features, optional=decl.optional
        )
    return resolved


def plan_sync(
    registrations: Iterable[PackRegistration],
    specs: Mapping[str, PackSpec],
    model: Manifest,
) -> ChangeSet:
    """Bring tracked crates up to their packs' recommendations.

    Emits ADD for tracked crates missing from the manifest, BUMP_VERSION when
    the user's version is strictly older, and ADD_FEATURES for missing
    features. A crate the user already has somewhere is synced where it is.
    """

    recommendations: list[tuple[str, Mapping[str, ResolvedDependency]]] = []
    for reg in registrations:
        spec = specs.get(reg.name)
        if spec is None:
            logger.warning("skipping %s: pack spec not available", reg.name)
            continue
        recommendations.append((reg.name, _tracked(spec, reg, model)))

    changes: list[Change] = []
    for name, md in merge_recommendations(recommendations).items():
        present = model.find_dependency(name)
        if not present:
            for kind in md.kinds:
                changes.append(
                    Change(pack=_owner(md), dependency=name, kind=kind, action=Action.ADD, version=md.version, features=md.features)
                )
            continue
        for existing in present:
            if existing.version is not None and is_older(existing.version, md.version):
                changes.append(
                    Change(pack=_owner(md), dependency=name, kind=existing.kind, action=Action.BUMP_VERSION, version=md.version)
                )
            missing = md.features - existing.features
            if missing:
                changes.append(
                    Change(
                        pack=_owner(md),
                        dependency=name,
                        kind=existing.kind,
                        action=Action.ADD_FEATURES,
                        features=frozenset(missing),
                    )
                )
    return ChangeSet(changes=tuple(changes))


def _apply_one(model: Manifest, ch: Change, *, use_workspace: bool) -> None:
    existing = model.get_dependency(ch.kind, ch.dependency)

    if ch.action is Action.REMOVE:
        if not model.remove_dependency(ch.kind, ch.dependency, deep=ch.deep):
            logger.debug("%s not in [%s]; nothing to remove", ch.dependency, ch.kind.table)
        return

    if ch.action is Action.ADD:
        if ch.version is None:
            raise ApplyError(message="add needs a version", change=ch)
        version = ch.version
        features = ch.features
        optional = False
        if existing is not None:
            # Adding what is already there merges instead of replacing.
            if existing.version is not None and not is_older(existing.version, ch.version):
                version = existing.version
            features = existing.features | ch.features
            optional = existing.optional
        entry = DependencyEntry(name=ch.dependency, kind=ch.kind, version=version, features=features, optional=optional)
        model.set_dependency(ch.kind, ch.dependency, entry, use_workspace=use_workspace)
        return

    if existing is None:
        raise ApplyError(message=f"{ch.dependency} is not in [{ch.kind.table}]", change=ch)

    if ch.action is Action.BUMP_VERSION:
        if ch.version is None:
            raise ApplyError(message="bump needs a version", change=ch)
        if existing.version is not None and is_older(ch.version, existing.version):
            raise ApplyError(message=f"refusing to downgrade {existing.version} to {ch.version}", change=ch)
        if existing.version == ch.version:
            return
        entry = DependencyEntry(
            name=ch.dependency, kind=ch.kind, version=ch.version, features=existing.features, optional=existing.optional
        )
        model.set_dependency(ch.kind, ch.dependency, entry)
        return

    if ch.action is Action.ADD_FEATURES:
        if ch.features <= existing.features:
            return
        entry = DependencyEntry(
            name=ch.dependency,
            kind=ch.kind,
            version=existing.version,
            features=existing.features | ch.features,
            optional=existing.optional,
        )
        model.set_dependency(ch.kind, ch.dependency, entry)
        return

    raise ApplyError(message=f"unknown action {ch.action!r}", change=ch)


def apply(change_set: ChangeSet, model: Manifest) -> Manifest:
    """Apply every change to a clone of `model` and return the clone.

    Raises ApplyError on the first failing change; `model` is never touched.
    """

    new = model.clone()
    for ch in change_set.changes:
        try:
            _apply_one(new, ch, use_workspace=change_set.use_workspace)
        except ApplyError as e:
            if e.change is None:
                raise ApplyError(message=e.message, change=ch) from e
            raise
        except (ValueError, TypeError, KeyError) as e:
            raise ApplyError(message=str(e), change=ch) from e

    for reg in change_set.registrations:
        try:
            if reg.build_dependency and reg.version is not None:
                current = new.get_dependency(DepKind.BUILD, reg.pack)
                if current is None or (current.version is not None and is_older(current.version, reg.version)):
                    new.set_dependency(
                        DepKind.BUILD,
                        reg.pack,
                        DependencyEntry(
                            name=reg.pack,
                            kind=DepKind.BUILD,
                            version=reg.version,
                            features=current.features if current else frozenset(),
                        ),
                        use_workspace=change_set.use_workspace,
                    )
            new.register_pack(reg.pack, reg.version, reg.features, scope=reg.scope)
        except ApplyError as e:
            raise ApplyError(message=e.message, change=reg) from e

    logger.info("applied %d change(s), %d registration(s)", len(change_set.changes), len(change_set.registrations))
    return new
