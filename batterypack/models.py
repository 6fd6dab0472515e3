from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


PACK_SUFFIX = "-battery-pack"
BASE_PACK = "battery-pack"
DEFAULT_GROUP = "default"
ALL_GROUP = "all"


class DepKind(str, Enum):
    RUNTIME = "runtime"
    DEV = "dev"
    BUILD = "build"

    @property
    def table(self) -> str:
        """Manifest table holding dependencies of this kind."""

        return _KIND_TABLES[self]

    @property
    def label(self) -> str:
        return {DepKind.RUNTIME: "", DepKind.DEV: "dev", DepKind.BUILD: "build"}[self]

    def cycle(self) -> DepKind:
        order = [DepKind.RUNTIME, DepKind.DEV, DepKind.BUILD]
        return order[(order.index(self) + 1) % len(order)]

    @staticmethod
    def from_table(table: str) -> DepKind:
        for kind, name in _KIND_TABLES.items():
            if name == table:
                return kind
        raise ValueError(f"unknown dependency table: {table!r}")


_KIND_TABLES = {
    DepKind.RUNTIME: "dependencies",
    DepKind.DEV: "dev-dependencies",
    DepKind.BUILD: "build-dependencies",
}

ALL_KINDS = (DepKind.RUNTIME, DepKind.DEV, DepKind.BUILD)


class Scope(str, Enum):
    PACKAGE = "package"
    WORKSPACE = "workspace"


@dataclass(frozen=True)
class DependencyEntry:
    """A dependency as declared in a consumer manifest."""

    name: str
    kind: DepKind
    version: str | None = None
    features: frozenset[str] = frozenset()
    optional: bool = False
    workspace: bool = False
    path: str | None = None


@dataclass(frozen=True)
class DependencyDecl:
    """A dependency as declared by a pack."""

    name: str
    version: str
    kind: DepKind = DepKind.RUNTIME
    features: frozenset[str] = frozenset()
    optional: bool = False


@dataclass(frozen=True)
class ResolvedDependency:
    """A dependency a pack recommends for a given group selection."""

    name: str
    version: str
    kind: DepKind
    features: frozenset[str] = frozenset()
    optional: bool = False


@dataclass(frozen=True)
class PackRegistration:
    """A pack recorded in the consumer manifest's registration table."""

    name: str
    version: str | None = None
    features: tuple[str, ...] = (DEFAULT_GROUP,)
    scope: Scope = Scope.PACKAGE


@dataclass(frozen=True)
class TemplateSpec:
    path: str
    description: str | None = None


@dataclass(frozen=True)
class PackSummary:
    """One row of a pack listing (registry or local)."""

    name: str
    version: str
    description: str = ""
    repository: str | None = None
    local_path: str | None = None

    @property
    def short_name(self) -> str:
        return short_name(self.name)


@dataclass(frozen=True)
class ExampleInfo:
    name: str
    description: str | None = None


@dataclass(frozen=True)
class PackDetail:
    """Everything the detail view shows about one pack."""

    name: str
    version: str
    description: str = ""
    repository: str | None = None
    crates: tuple[str, ...] = ()
    extends: tuple[str, ...] = ()
    templates: tuple[tuple[str, TemplateSpec], ...] = ()
    examples: tuple[ExampleInfo, ...] = ()
    local_path: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def short_name(self) -> str:
        return short_name(self.name)


def short_name(pack_name: str) -> str:
    """`cli-battery-pack` -> `cli`."""

    if pack_name.endswith(PACK_SUFFIX):
        return pack_name[: -len(PACK_SUFFIX)]
    return pack_name


def resolve_pack_name(name: str) -> str:
    """`cli` -> `cli-battery-pack`; full names and `battery-pack` are kept."""

    if name == BASE_PACK or name.endswith(PACK_SUFFIX):
        return name
    return name + PACK_SUFFIX


def is_pack_name(name: str) -> bool:
    return name == BASE_PACK or name.endswith(PACK_SUFFIX)


def version_label(version: str, features: frozenset[str] | set[str] | tuple[str, ...] = (), kind: DepKind = DepKind.RUNTIME) -> str:
    """Compact listing label: `(4)`, `(4, dev)`, `(4, build, features: a, b)`."""

    parts = [version]
    if kind is not DepKind.RUNTIME:
        parts.append(kind.label)
    if features:
        parts.append("features: " + ", ".join(sorted(features)))
    return "(" + ", ".join(parts) + ")"
