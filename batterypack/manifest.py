from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, TypeVar

from .errors import ApplyError, NotFoundError, ParseError
from .models import (
    ALL_KINDS,
    DEFAULT_GROUP,
    DepKind,
    DependencyEntry,
    PackRegistration,
    Scope,
    is_pack_name,
)
from .toml_write import toml_array, toml_basic_string, toml_bool, toml_inline_table
from .tomldoc import Document, Key, Table


logger = logging.getLogger(__name__)

T = TypeVar("T")

METADATA_KEY = "battery-pack"
WORKSPACE_DEPS: Key = ("workspace", "dependencies")

_SCOPE_PATHS: dict[Scope, Key] = {
    Scope.PACKAGE: ("package", "metadata", METADATA_KEY),
    Scope.WORKSPACE: ("workspace", "metadata", METADATA_KEY),
}


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


def _ordered_features(existing: list[str], wanted: frozenset[str]) -> list[str]:
    """Keep the user's order for features that stay; append new ones sorted."""

    out = [f for f in existing if f in wanted]
    out.extend(sorted(f for f in wanted if f not in out))
    return out


def _render_dep(version: str | None, features: list[str], optional: bool) -> str:
    if not features and not optional and version is not None:
        return toml_basic_string(version)
    tbl: dict[str, Any] = {}
    if version is not None:
        tbl["version"] = version
    if features:
        tbl["features"] = features
    if optional:
        tbl["optional"] = True
    return toml_inline_table(tbl, key_order=["version", "features", "optional"])


class Manifest:
    """A consumer manifest that edits in place and preserves formatting.

    `workspace` links the manifest holding `[workspace.dependencies]` and
    `[workspace.metadata]`. It is `self` for a workspace root and None for a
    standalone package.
    """

    def __init__(self, doc: Document, *, path: Path | None = None) -> None:
        self.doc = doc
        self.path = path
        self.workspace: Manifest | None = None
        self._cache: dict[str, Any] | None = None
        if "workspace" in self.data():
            self.workspace = self

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, text: str, *, path: Path | None = None) -> Manifest:
        return cls(Document.parse(text, path=path), path=path)

    @classmethod
    def read(cls, path: Path) -> Manifest:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise NotFoundError("manifest", str(path)) from e
        return cls.load(text, path=path)

    def link_workspace(self, workspace: Manifest | None) -> Manifest:
        if workspace is not None and workspace.workspace is None:
            raise ValueError(f"{workspace.path or 'manifest'} has no [workspace] table")
        self.workspace = workspace
        return self

    def serialize(self) -> str:
        return self.doc.to_text()

    def write(self, path: Path | None = None) -> Path:
        target = path or self.path
        if target is None:
            raise ValueError("manifest has no path to write to")
        _atomic_write_text(target, self.serialize())
        return target

    def clone(self) -> Manifest:
        new = Manifest.__new__(Manifest)
        new.doc = self.doc.copy()
        new.path = self.path
        new._cache = None
        if self.workspace is self:
            new.workspace = new
        elif self.workspace is not None:
            new.workspace = self.workspace.clone()
        else:
            new.workspace = None
        return new

    def data(self) -> dict[str, Any]:
        if self._cache is None:
            self._cache = self.doc.data()
        return self._cache

    def _edit(self, fn: Callable[[], T]) -> T:
        # Edits that fail, or leave invalid TOML behind, are rolled back.
        snapshot = self.doc.copy()
        try:
            result = fn()
            self._cache = None
            self.data()
        except ParseError as e:
            self.doc = snapshot
            self._cache = None
            raise ApplyError(message=f"edit produced invalid TOML: {e.message}") from e
        except BaseException:
            self.doc = snapshot
            self._cache = None
            raise
        return result

    # ------------------------------------------------------------------
    # Shape
    # ------------------------------------------------------------------

    @property
    def package_name(self) -> str | None:
        pkg = self.data().get("package")
        if isinstance(pkg, dict) and isinstance(pkg.get("name"), str):
            return pkg["name"]
        return None

    @property
    def is_workspace_root(self) -> bool:
        return isinstance(self.data().get("workspace"), dict)

    @property
    def is_virtual(self) -> bool:
        return self.is_workspace_root and "package" not in self.data()

    def workspace_members(self) -> list[str]:
        ws = self.data().get("workspace")
        if not isinstance(ws, dict):
            return []
        members = ws.get("members")
        if not isinstance(members, list):
            return []
        return [m for m in members if isinstance(m, str)]

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def dependency_names(self, kind: DepKind) -> list[str]:
        tbl = self.data().get(kind.table)
        if not isinstance(tbl, dict):
            return []
        return list(tbl.keys())

    def _workspace_dep(self, name: str) -> Any:
        if self.workspace is None:
            return None
        deps = self.workspace.data().get("workspace", {}).get("dependencies")
        if not isinstance(deps, dict):
            return None
        return deps.get(name)

    def get_dependency(self, kind: DepKind, name: str) -> DependencyEntry | None:
        tbl = self.data().get(kind.table)
        if not isinstance(tbl, dict) or name not in tbl:
            return None
        raw = tbl[name]
        if isinstance(raw, str):
            return DependencyEntry(name=name, kind=kind, version=raw)
        if not isinstance(raw, dict):
            logger.warning("ignoring %s.%s: unsupported dependency value", kind.table, name)
            return None

        features = frozenset(f for f in raw.get("features", []) if isinstance(f, str))
        version = raw.get("version") if isinstance(raw.get("version"), str) else None
        path = raw.get("path") if isinstance(raw.get("path"), str) else None
        inherited = raw.get("workspace") is True
        if inherited:
            ws_raw = self._workspace_dep(name)
            if isinstance(ws_raw, str):
                version = ws_raw
            elif isinstance(ws_raw, dict):
                if isinstance(ws_raw.get("version"), str):
                    version = ws_raw["version"]
                if isinstance(ws_raw.get("path"), str):
                    path = ws_raw["path"]
                features = features | frozenset(f for f in ws_raw.get("features", []) if isinstance(f, str))
        return DependencyEntry(
            name=name,
            kind=kind,
            version=version,
            features=features,
            optional=raw.get("optional") is True,
            workspace=inherited,
            path=path,
        )

    def set_dependency(self, kind: DepKind, name: str, entry: DependencyEntry, *, use_workspace: bool = False) -> None:
        """Insert or update `name` in the table for `kind`.

        Existing entries keep their form (string, inline table, sub-table or
        dotted keys) and position; unchanged values are not rewritten.
        """

        existing = self.get_dependency(kind, name)
        inherits = existing is not None and existing.workspace
        if self.workspace is not None and (use_workspace or inherits):
            ws = self.workspace
            ws._edit(lambda: ws._write_dep(WORKSPACE_DEPS, name, entry.version, entry.features, False))
            if not inherits:
                self._edit(lambda: self._point_at_workspace(kind, name, existing is not None, entry.optional))
            return
        self._edit(lambda: self._write_dep((kind.table,), name, entry.version, entry.features, entry.optional))

    def _point_at_workspace(self, kind: DepKind, name: str, replace: bool, optional: bool) -> None:
        if replace:
            self._drop_dep((kind.table,), name)
        ref: dict[str, Any] = {"workspace": True}
        if optional:
            ref["optional"] = True
        self.doc.ensure_table((kind.table,)).set((name,), toml_inline_table(ref, key_order=["workspace", "optional"]))

    def _locate(self, table_path: Key, name: str) -> tuple[str, Table | None]:
        """Find how `name` is declared under `table_path`: "entry", "table",
        "dotted" or "absent"."""

        parent = self.doc.find_table(table_path)
        if parent is not None and parent.get((name,)) is not None:
            return "entry", parent
        sub = self.doc.find_table(table_path + (name,))
        if sub is not None:
            return "table", sub
        if parent is not None and parent.with_prefix((name,)):
            return "dotted", parent
        return "absent", parent

    def _write_dep(
        self,
        table_path: Key,
        name: str,
        version: str | None,
        features: frozenset[str],
        optional: bool,
    ) -> None:
        form, table = self._locate(table_path, name)

        if form == "entry":
            assert table is not None
            e = table.get((name,))
            assert e is not None
            current = e.value
            if isinstance(current, str):
                rendered = _render_dep(version or current, sorted(features), optional)
                if rendered != e.value_text:
                    e.value_text = rendered
                return
            if not isinstance(current, dict):
                raise ApplyError(message=f"{'.'.join(table_path)}.{name}: unsupported dependency value")
            merged = dict(current)
            if version is not None:
                merged["version"] = version
            feats = _ordered_features(list(current.get("features", [])), features)
            if feats:
                merged["features"] = feats
            else:
                merged.pop("features", None)
            if optional:
                merged["optional"] = True
            else:
                merged.pop("optional", None)
            if merged != current:
                e.value_text = toml_inline_table(merged, key_order=list(merged.keys()))
            return

        if form in ("table", "dotted"):
            assert table is not None
            prefix: Key = () if form == "table" else (name,)
            current = self.doc.lookup(table_path + (name,), default={})
            if version is not None and current.get("version") != version:
                table.set(prefix + ("version",), toml_basic_string(version))
            feats = _ordered_features(list(current.get("features", [])), features)
            if feats != list(current.get("features", [])):
                if feats:
                    table.set(prefix + ("features",), toml_array(feats))
                else:
                    table.remove(prefix + ("features",))
            if optional and current.get("optional") is not True:
                table.set(prefix + ("optional",), toml_bool(True))
            elif not optional and "optional" in current:
                table.remove(prefix + ("optional",))
            return

        if version is None:
            raise ApplyError(message=f"{'.'.join(table_path)}.{name}: a new dependency needs a version")
        siblings = self.doc.tables_under(table_path)
        if siblings and (table is None or not table.keys()):
            # Every existing dependency is a `[table.name]` section; follow suit.
            sub = self.doc.insert_table(table_path + (name,), after=siblings[-1])
            sub.set(("version",), toml_basic_string(version))
            if features:
                sub.set(("features",), toml_array(sorted(features)))
            if optional:
                sub.set(("optional",), toml_bool(True))
            return
        self.doc.ensure_table(table_path).set((name,), _render_dep(version, sorted(features), optional))

    def _drop_dep(self, table_path: Key, name: str) -> bool:
        form, table = self._locate(table_path, name)
        if form == "entry":
            assert table is not None
            return table.remove((name,))
        if form == "table":
            return self.doc.remove_table(table_path + (name,))
        if form == "dotted":
            assert table is not None
            for e in table.with_prefix((name,)):
                table.remove(e.key)
            return True
        return False

    def remove_dependency(self, kind: DepKind, name: str, *, deep: bool = False) -> bool:
        """Delete `name` from the table for `kind`.

        The shared `[workspace.dependencies]` declaration stays unless `deep`
        is set, since other members may still inherit it.
        """

        removed = self._edit(lambda: self._drop_dep((kind.table,), name))
        if deep and self.workspace is not None:
            ws = self.workspace
            removed = ws._edit(lambda: ws._drop_dep(WORKSPACE_DEPS, name)) or removed
        if removed:
            logger.debug("removed %s from %s (deep=%s)", name, kind.table, deep)
        return removed

    def user_dep_versions(self) -> dict[str, str]:
        """Declared versions across all three tables; path-only deps are skipped."""

        out: dict[str, str] = {}
        for kind in ALL_KINDS:
            for name in self.dependency_names(kind):
                dep = self.get_dependency(kind, name)
                if dep is None or dep.version is None:
                    continue
                out.setdefault(name, dep.version)
        return out

    def find_dependency(self, name: str) -> list[DependencyEntry]:
        found = []
        for kind in ALL_KINDS:
            dep = self.get_dependency(kind, name)
            if dep is not None:
                found.append(dep)
        return found

    # ------------------------------------------------------------------
    # Registrations
    # ------------------------------------------------------------------

    def _registration_table(self, scope: Scope) -> dict[str, Any]:
        src = self if scope is Scope.PACKAGE else self.workspace
        if src is None:
            return {}
        cur: Any = src.data()
        for part in _SCOPE_PATHS[scope]:
            if not isinstance(cur, dict):
                return {}
            cur = cur.get(part)
        return cur if isinstance(cur, dict) else {}

    def _decode_registrations(self, scope: Scope) -> tuple[list[PackRegistration], list[str]]:
        regs: list[PackRegistration] = []
        problems: list[str] = []
        where = ".".join(_SCOPE_PATHS[scope])
        for name, raw in sorted(self._registration_table(scope).items()):
            if not is_pack_name(name):
                problems.append(f"{where}.{name}: not a battery pack name")
                continue
            if isinstance(raw, str):
                regs.append(PackRegistration(name=name, version=raw, scope=scope))
                continue
            if not isinstance(raw, dict):
                problems.append(f"{where}.{name}: expected version string or table")
                continue
            version = raw.get("version")
            if version is not None and not isinstance(version, str):
                problems.append(f"{where}.{name}.version: expected string")
                continue
            features = raw.get("features", [DEFAULT_GROUP])
            if not isinstance(features, list) or not all(isinstance(f, str) for f in features):
                problems.append(f"{where}.{name}.features: expected list of strings")
                continue
            unknown = set(raw.keys()) - {"version", "features"}
            if unknown:
                problems.append(f"{where}.{name}: unknown keys: {', '.join(sorted(unknown))}")
                continue
            regs.append(PackRegistration(name=name, version=version, features=tuple(features), scope=scope))
        return regs, problems

    def registrations(self, scope: Scope | None = None) -> list[PackRegistration]:
        scopes = [scope] if scope is not None else [Scope.PACKAGE, Scope.WORKSPACE]
        out: list[PackRegistration] = []
        seen: set[str] = set()
        for s in scopes:
            regs, problems = self._decode_registrations(s)
            for p in problems:
                logger.warning("ignoring registration %s", p)
            for r in regs:
                if r.name not in seen:
                    seen.add(r.name)
                    out.append(r)
        return out

    def registration_problems(self) -> list[str]:
        out: list[str] = []
        for s in (Scope.PACKAGE, Scope.WORKSPACE):
            out.extend(self._decode_registrations(s)[1])
        return out

    def get_registration(self, name: str) -> PackRegistration | None:
        for r in self.registrations():
            if r.name == name:
                return r
        return None

    def active_features(self, name: str) -> tuple[str, ...]:
        """Active groups for a pack; `("default",)` when nothing is recorded."""

        reg = self.get_registration(name)
        return reg.features if reg is not None else (DEFAULT_GROUP,)

    def register_pack(
        self,
        name: str,
        version: str | None,
        features: tuple[str, ...] | list[str] = (DEFAULT_GROUP,),
        *,
        scope: Scope = Scope.PACKAGE,
    ) -> None:
        """Record (or update) a pack registration. Never duplicates an entry."""

        target = self if scope is Scope.PACKAGE else self.workspace
        if target is None:
            raise ApplyError(message=f"cannot register {name} in workspace scope: no workspace manifest")
        feats = sorted(set(features))
        table_path = _SCOPE_PATHS[scope]
        target._edit(lambda: target._write_registration(table_path, name, version, feats))

    def _write_registration(self, table_path: Key, name: str, version: str | None, features: list[str]) -> None:
        form, table = self._locate(table_path, name)
        short = features == [DEFAULT_GROUP]

        if form == "entry":
            assert table is not None
            e = table.get((name,))
            assert e is not None
            current = e.value
            if isinstance(current, str):
                version = version or current
                if short:
                    rendered = toml_basic_string(version)
                else:
                    rendered = toml_inline_table({"version": version, "features": features}, key_order=["version", "features"])
            elif isinstance(current, dict):
                merged = dict(current)
                if version is not None:
                    merged["version"] = version
                merged["features"] = features
                if merged == current:
                    return
                rendered = toml_inline_table(merged, key_order=list(merged.keys()))
            else:
                raise ApplyError(message=f"{'.'.join(table_path)}.{name}: unsupported registration value")
            if rendered != e.value_text:
                e.value_text = rendered
            return

        if form in ("table", "dotted"):
            assert table is not None
            prefix: Key = () if form == "table" else (name,)
            current = self.doc.lookup(table_path + (name,), default={})
            if version is not None and current.get("version") != version:
                table.set(prefix + ("version",), toml_basic_string(version))
            if current.get("features") != features:
                table.set(prefix + ("features",), toml_array(features))
            return

        tbl = self.doc.ensure_table(table_path)
        if short and version is not None:
            tbl.set((name,), toml_basic_string(version))
        else:
            data: dict[str, Any] = {"features": features}
            if version is not None:
                data = {"version": version, "features": features}
            tbl.set((name,), toml_inline_table(data, key_order=["version", "features"]))

    def installed_packs(self) -> list[str]:
        """Packs installed as build-dependencies, plus any registered ones."""

        names = {n for n in self.dependency_names(DepKind.BUILD) if is_pack_name(n)}
        names.update(r.name for r in self.registrations())
        return sorted(names)

    def tracked_packs(self) -> list[PackRegistration]:
        """A registration for every installed pack.

        A pack found only in `[build-dependencies]` tracks its default group
        at the build-dependency's version.
        """

        regs = {r.name: r for r in self.registrations()}
        out: list[PackRegistration] = []
        for name in self.installed_packs():
            reg = regs.get(name)
            if reg is None:
                build = self.get_dependency(DepKind.BUILD, name)
                reg = PackRegistration(
                    name=name, version=build.version if build is not None else None, features=(DEFAULT_GROUP,)
                )
            out.append(reg)
        return out
