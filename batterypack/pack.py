"""Pack declarations.

A pack is described by a Cargo-style manifest. Its `[dependencies]`,
`[dev-dependencies]` and `[build-dependencies]` are the curated crates; its
`[features]` table declares the feature groups:

    [features]
    default = ["clap", "dialoguer"]
    indicators = ["indicatif", "console"]
    tokio-full = ["tokio/full"]

A member is a crate name (optionally `dep:`-prefixed), another group's name,
or a `crate/feature` augmentation that pulls the crate in with an extra
feature. `[package.metadata.battery-pack].hidden` lists names or glob
patterns kept out of every listing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Iterable

from .errors import NotFoundError, ParseError, SpecError
from .models import (
    ALL_GROUP,
    ALL_KINDS,
    DEFAULT_GROUP,
    DependencyDecl,
    DepKind,
    PackSummary,
    ResolvedDependency,
    TemplateSpec,
    is_pack_name,
)
from .tomldoc import loads


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupMember:
    name: str
    feature: str | None = None
    explicit_dep: bool = False


def parse_member(raw: str) -> GroupMember:
    if raw.startswith("dep:"):
        return GroupMember(name=raw[4:], explicit_dep=True)
    if "/" in raw:
        name, _, feature = raw.partition("/")
        return GroupMember(name=name.rstrip("?"), feature=feature)
    return GroupMember(name=raw)


@dataclass(frozen=True)
class PackSpec:
    name: str
    version: str
    description: str = ""
    repository: str | None = None
    keywords: tuple[str, ...] = ()
    dependencies: dict[str, DependencyDecl] = field(default_factory=dict)
    feature_groups: dict[str, tuple[str, ...]] = field(default_factory=dict)
    hidden: tuple[str, ...] = ()
    templates: dict[str, TemplateSpec] = field(default_factory=dict)
    source: str | None = None

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    def is_hidden(self, name: str) -> bool:
        return any(p == name or fnmatchcase(name, p) for p in self.hidden)

    def _is_crate(self, name: str) -> bool:
        return name in self.dependencies and not is_pack_name(name) and not self.is_hidden(name)

    def visible_dependencies(self) -> list[DependencyDecl]:
        """User-facing crates, in declaration order."""

        return [d for n, d in self.dependencies.items() if self._is_crate(n)]

    @property
    def extends(self) -> list[str]:
        """Other packs this pack builds on."""

        return [n for n in self.dependencies if is_pack_name(n)]

    @property
    def default_declared(self) -> bool:
        return DEFAULT_GROUP in self.feature_groups

    def group_names(self) -> list[str]:
        """Declared groups; `default` first, even when it is implicit."""

        names = [g for g in self.feature_groups if g != DEFAULT_GROUP]
        return [DEFAULT_GROUP, *names]

    def default_members(self) -> list[str]:
        if self.default_declared:
            return list(self.feature_groups[DEFAULT_GROUP])
        return [d.name for d in self.visible_dependencies() if not d.optional]

    def has_choices(self) -> bool:
        """True when the user has something to pick beyond the default group."""

        defaults = set(self.group_dependencies(DEFAULT_GROUP))
        extra = [d for d in self.visible_dependencies() if d.name not in defaults]
        return bool(extra) or len(self.group_names()) > 1

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _members(self, group: str) -> list[str] | None:
        if group == DEFAULT_GROUP:
            return self.default_members()
        members = self.feature_groups.get(group)
        return list(members) if members is not None else None

    def _expand(self, group: str, seen: set[str]) -> list[GroupMember]:
        if group in seen:
            return []
        seen.add(group)
        members = self._members(group)
        if members is None:
            logger.debug("%s: unknown feature group %r", self.name, group)
            return []
        out: list[GroupMember] = []
        for raw in members:
            m = parse_member(raw)
            if m.feature is None and not m.explicit_dep and m.name in self.feature_groups and m.name not in self.dependencies:
                out.extend(self._expand(m.name, seen))
            else:
                out.append(m)
        return out

    def resolve_group(self, selected: Iterable[str], include_all: bool = False) -> dict[str, ResolvedDependency]:
        """Merge the crates of every selected group.

        Features only accumulate: a crate pulled in by several groups gets the
        union of its base features and every augmentation. Hidden crates never
        appear in the result.
        """

        selected = list(selected)
        if ALL_GROUP in selected and ALL_GROUP not in self.feature_groups:
            include_all = True

        out: dict[str, ResolvedDependency] = {}

        def add(name: str, extra: Iterable[str] = ()) -> None:
            if not self._is_crate(name):
                return
            decl = self.dependencies[name]
            cur = out.get(name)
            feats = (cur.features if cur is not None else decl.features) | frozenset(extra)
            out[name] = ResolvedDependency(
                name=name,
                version=decl.version,
                kind=decl.kind,
                features=feats,
                optional=decl.optional,
            )

        groups = list(self.group_names()) if include_all else selected
        if include_all:
            for d in self.visible_dependencies():
                add(d.name)
        for g in groups:
            for m in self._expand(g, set()):
                add(m.name, [m.feature] if m.feature else [])
        return {k: out[k] for k in sorted(out)}

    def resolve_all(self) -> dict[str, ResolvedDependency]:
        return self.resolve_group((), include_all=True)

    def group_dependencies(self, group: str) -> list[str]:
        """Visible crates a single group pulls in."""

        names: list[str] = []
        for m in self._expand(group, set()):
            if self._is_crate(m.name) and m.name not in names:
                names.append(m.name)
        return names

    def groups_containing(self, crate: str) -> list[str]:
        return [g for g in self.group_names() if crate in self.group_dependencies(g)]

    def summary(self) -> PackSummary:
        return PackSummary(
            name=self.name,
            version=self.version,
            description=self.description,
            repository=self.repository,
            local_path=self.source if self.source and not self.source.startswith(("http:", "https:", "file:")) else None,
        )


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------


def _require_table(source: str, value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise SpecError(source=source, message=f"{where}: expected table")
    return value


def _require_str(source: str, value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise SpecError(source=source, message=f"{where}: expected string")
    return value


def _optional_str(source: str, value: Any, where: str) -> str | None:
    if value is None:
        return None
    return _require_str(source, value, where)


def _require_str_list(source: str, value: Any, where: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        raise SpecError(source=source, message=f"{where}: expected list of strings")
    return list(value)


def _parse_dep(
    source: str,
    name: str,
    raw: Any,
    kind: DepKind,
    workspace_deps: dict[str, Any],
) -> DependencyDecl:
    where = f"{kind.table}.{name}"
    if isinstance(raw, str):
        return DependencyDecl(name=name, version=raw, kind=kind)
    tbl = _require_table(source, raw, where)
    features = _require_str_list(source, tbl.get("features", []), f"{where}.features")
    optional = tbl.get("optional", False)
    if not isinstance(optional, bool):
        raise SpecError(source=source, message=f"{where}.optional: expected bool")
    version = _optional_str(source, tbl.get("version"), f"{where}.version")
    if tbl.get("workspace") is True:
        inherited = workspace_deps.get(name)
        if isinstance(inherited, str):
            version = version or inherited
        elif isinstance(inherited, dict):
            version = version or _optional_str(source, inherited.get("version"), f"workspace.dependencies.{name}.version")
            features = list(inherited.get("features", [])) + features
    if version is None:
        raise SpecError(source=source, message=f"{where}: missing version")
    return DependencyDecl(name=name, version=version, kind=kind, features=frozenset(features), optional=optional)


def parse_pack_data(data: dict[str, Any], *, source: str = "<pack>", workspace: dict[str, Any] | None = None) -> PackSpec:
    pkg = _require_table(source, data.get("package"), "package")
    name = _require_str(source, pkg.get("name"), "package.name")
    version = pkg.get("version")
    if isinstance(version, dict) and version.get("workspace") is True and workspace:
        version = workspace.get("workspace", {}).get("package", {}).get("version")
    version = _require_str(source, version, "package.version")

    ws_deps: dict[str, Any] = {}
    if workspace:
        ws_deps = workspace.get("workspace", {}).get("dependencies", {}) or {}

    deps: dict[str, DependencyDecl] = {}
    for kind in ALL_KINDS:
        tbl = data.get(kind.table)
        if tbl is None:
            continue
        for dep_name, raw in _require_table(source, tbl, kind.table).items():
            decl = _parse_dep(source, dep_name, raw, kind, ws_deps)
            if dep_name in deps:
                # Runtime placement wins; dev and build keep the first seen.
                logger.debug("%s: %s declared as %s and %s", name, dep_name, deps[dep_name].kind.value, kind.value)
                continue
            deps[dep_name] = decl

    groups: dict[str, tuple[str, ...]] = {}
    feats_raw = data.get("features")
    if feats_raw is not None:
        for group, members in _require_table(source, feats_raw, "features").items():
            groups[group] = tuple(_require_str_list(source, members, f"features.{group}"))

    metadata = pkg.get("metadata") or {}
    _require_table(source, metadata, "package.metadata")
    bp_meta = _require_table(source, metadata.get("battery-pack", {}), "package.metadata.battery-pack")
    hidden = tuple(_require_str_list(source, bp_meta.get("hidden", []), "package.metadata.battery-pack.hidden"))

    templates: dict[str, TemplateSpec] = {}
    battery = _require_table(source, metadata.get("battery", {}), "package.metadata.battery")
    tmpl_raw = battery.get("templates")
    if tmpl_raw is not None:
        for tname, t in _require_table(source, tmpl_raw, "package.metadata.battery.templates").items():
            where = f"package.metadata.battery.templates.{tname}"
            tt = _require_table(source, t, where)
            templates[tname] = TemplateSpec(
                path=_require_str(source, tt.get("path"), f"{where}.path"),
                description=_optional_str(source, tt.get("description"), f"{where}.description"),
            )

    keywords = pkg.get("keywords", [])
    return PackSpec(
        name=name,
        version=version,
        description=_optional_str(source, pkg.get("description"), "package.description") or "",
        repository=pkg.get("repository") if isinstance(pkg.get("repository"), str) else None,
        keywords=tuple(keywords) if isinstance(keywords, list) else (),
        dependencies=deps,
        feature_groups=groups,
        hidden=hidden,
        templates=templates,
        source=source,
    )


def parse_pack_spec(text: str, *, source: str = "<pack>", workspace_text: str | None = None) -> PackSpec:
    """Parse a pack manifest. Malformed input raises SpecError."""

    try:
        data = loads(text)
        workspace = loads(workspace_text) if workspace_text is not None else None
    except ParseError as e:
        raise SpecError(source=source, message=str(e)) from e
    return parse_pack_data(data, source=source, workspace=workspace)


def load_pack_spec(path: Path) -> PackSpec:
    manifest = path / "Cargo.toml" if path.is_dir() else path
    try:
        text = manifest.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise NotFoundError("pack manifest", str(manifest)) from e
    workspace_text = None
    for parent in manifest.parent.parents:
        candidate = parent / "Cargo.toml"
        if candidate.exists():
            ws_text = candidate.read_text(encoding="utf-8")
            try:
                is_root = "workspace" in loads(ws_text, path=candidate)
            except ParseError as e:
                raise SpecError(source=str(candidate), message=str(e)) from e
            if is_root:
                workspace_text = ws_text
                break
    return parse_pack_spec(text, source=str(manifest.parent), workspace_text=workspace_text)


# ----------------------------------------------------------------------
# Add selection
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class AddSelection:
    """Crates to add plus the groups to record in the registration."""

    active_features: tuple[str, ...]
    crates: dict[str, ResolvedDependency]
    missing: tuple[NotFoundError, ...] = ()


@dataclass(frozen=True)
class Interactive:
    """No flags were given and the pack has real choices: ask the user."""


def resolve_add(
    spec: PackSpec,
    *,
    features: Iterable[str] = (),
    no_default: bool = False,
    all_features: bool = False,
    crates: Iterable[str] = (),
) -> AddSelection | Interactive:
    features = list(features)
    crates = list(crates)

    if crates:
        available = spec.resolve_all()
        picked: dict[str, ResolvedDependency] = {}
        missing: list[NotFoundError] = []
        for c in crates:
            if c in available:
                picked[c] = available[c]
            else:
                hint = "Available crates: " + ", ".join(sorted(available)) if available else ""
                missing.append(NotFoundError(kind="crate", name=c, hint=hint))
        return AddSelection(active_features=(), crates=picked, missing=tuple(missing))

    if all_features:
        return AddSelection(active_features=(ALL_GROUP,), crates=spec.resolve_all())

    if not features and not no_default and spec.has_choices():
        return Interactive()

    active: list[str] = [] if no_default else [DEFAULT_GROUP]
    missing = []
    for f in features:
        if f != DEFAULT_GROUP and f not in spec.feature_groups:
            missing.append(NotFoundError(kind="feature", name=f, hint="Available features: " + ", ".join(spec.group_names())))
            continue
        if f not in active:
            active.append(f)
    active_t = tuple(sorted(active))
    return AddSelection(active_features=active_t, crates=spec.resolve_group(active_t), missing=tuple(missing))
