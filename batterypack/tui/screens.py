"""Screens of the interactive session.

Each screen is a frozen dataclass holding only its own state; `Screen` is the
closed union of them. A screen that can be cancelled keeps the screen it was
entered from in `back`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Literal, Mapping, Optional, Union

from ..models import ALL_GROUP, DEFAULT_GROUP, DepKind, PackDetail, PackSummary, version_label
from ..pack import PackSpec


# ----------------------------------------------------------------------
# Loading targets
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class ListTarget:
    filter: str | None = None


@dataclass(frozen=True)
class DetailTarget:
    name: str


@dataclass(frozen=True)
class AddTarget:
    """Installed packs of the project; `focus` also expands that pack."""

    focus: str | None = None


@dataclass(frozen=True)
class BrowseTarget:
    filter: str | None = None


@dataclass(frozen=True)
class ExpandTarget:
    name: str


@dataclass(frozen=True)
class CreateTarget:
    pack: str
    template: str | None
    directory: str
    name: str


Target = Union[ListTarget, DetailTarget, AddTarget, BrowseTarget, ExpandTarget, CreateTarget]


def describe_target(target: Target) -> str:
    if isinstance(target, ListTarget):
        return "Loading battery packs..."
    if isinstance(target, DetailTarget):
        return f"Loading {target.name}..."
    if isinstance(target, AddTarget):
        return "Reading project manifest..."
    if isinstance(target, BrowseTarget):
        return "Searching battery packs..."
    if isinstance(target, ExpandTarget):
        return f"Loading {target.name}..."
    return f"Creating {target.name}..."


# ----------------------------------------------------------------------
# Add-screen rows
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class CrateEntry:
    name: str
    version: str
    features: tuple[str, ...]
    kind: DepKind
    original_kind: DepKind
    group: str
    enabled: bool
    originally_enabled: bool

    @property
    def changed(self) -> bool:
        return self.enabled != self.originally_enabled or (self.enabled and self.kind is not self.original_kind)

    def label(self) -> str:
        return version_label(self.version, self.features, self.kind)


@dataclass(frozen=True)
class GroupEntry:
    name: str
    members: tuple[str, ...]
    enabled: bool
    originally_enabled: bool


@dataclass(frozen=True)
class PackRows:
    """Toggle state for one pack on the Add screen."""

    name: str
    version: str
    spec: PackSpec
    installed: bool
    groups: tuple[GroupEntry, ...] = ()
    entries: tuple[CrateEntry, ...] = ()
    registered_version: str | None = None
    keep_all: bool = False
    active: tuple[str, ...] = ()

    def rows(self) -> list[tuple[str, int]]:
        """Selectable rows in display order: each group followed by the
        crates it introduces, then crates outside every group."""

        out: list[tuple[str, int]] = []
        placed: set[int] = set()
        for gi, g in enumerate(self.groups):
            out.append(("group", gi))
            for ci, c in enumerate(self.entries):
                if c.group == g.name and ci not in placed:
                    out.append(("crate", ci))
                    placed.add(ci)
        out.extend(("crate", ci) for ci in range(len(self.entries)) if ci not in placed)
        return out

    def enabled_groups(self) -> tuple[str, ...]:
        return tuple(g.name for g in self.groups if g.enabled)

    @property
    def is_new(self) -> bool:
        return not self.installed and any(c.enabled for c in self.entries)

    def has_changes(self) -> bool:
        if self.is_new:
            return True
        if any(c.changed for c in self.entries):
            return True
        return any(g.enabled != g.originally_enabled for g in self.groups)


def pack_rows(
    spec: PackSpec,
    *,
    active: tuple[str, ...] | None = None,
    present: Mapping[str, DepKind] | None = None,
    registered_version: str | None = None,
) -> PackRows:
    """Build the toggle rows for `spec`.

    `active` is the registration's groups (None for a pack that is not
    installed, which starts from the default group). `present` maps crates
    already in the manifest to the table they sit in.
    """

    installed = active is not None
    groups_on = set(active if installed else (DEFAULT_GROUP,))
    keep_all = ALL_GROUP in groups_on
    present = present or {}

    resolved = spec.resolve_group(sorted(groups_on))
    group_entries = []
    for g in spec.group_names():
        members = tuple(spec.group_dependencies(g))
        if not members:
            continue
        on = keep_all or g in groups_on
        group_entries.append(GroupEntry(name=g, members=members, enabled=on, originally_enabled=on if installed else False))

    entries = []
    for decl in spec.visible_dependencies():
        owners = spec.groups_containing(decl.name)
        feats = resolved[decl.name].features if decl.name in resolved else decl.features
        enabled = decl.name in resolved or decl.name in present
        kind = present.get(decl.name, decl.kind)
        entries.append(
            CrateEntry(
                name=decl.name,
                version=decl.version,
                features=tuple(sorted(feats)),
                kind=kind,
                original_kind=kind,
                group=owners[0] if owners else "",
                enabled=enabled,
                originally_enabled=enabled if installed else False,
            )
        )
    return PackRows(
        name=spec.name,
        version=spec.version,
        spec=spec,
        installed=installed,
        groups=tuple(group_entries),
        entries=tuple(entries),
        registered_version=registered_version,
        keep_all=keep_all,
        active=tuple(sorted(groups_on)) if installed else (),
    )


@dataclass(frozen=True)
class AddPayload:
    """Result of loading an AddTarget."""

    packs: tuple[PackRows, ...] = ()
    focus: PackRows | None = None


# ----------------------------------------------------------------------
# Screens
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Loading:
    target: Target
    back: Optional["Screen"] = None

    @property
    def message(self) -> str:
        return describe_target(self.target)


@dataclass(frozen=True)
class Error:
    message: str
    retry: Target | None = None
    back: Optional["Screen"] = None


@dataclass(frozen=True)
class PackList:
    items: tuple[PackSummary, ...] = ()
    cursor: int = 0
    filter: str | None = None


DetailKind = Literal["crate", "extends", "template", "example", "open", "add", "new"]
DETAIL_ACTIONS: tuple[DetailKind, ...] = ("open", "add", "new")


@dataclass(frozen=True)
class Detail:
    detail: PackDetail
    cursor: int = -1
    back: Optional["Screen"] = None
    notice: str | None = None

    def items(self) -> list[tuple[DetailKind, str]]:
        d = self.detail
        out: list[tuple[DetailKind, str]] = [("crate", c) for c in d.crates]
        out += [("extends", e) for e in d.extends]
        out += [("template", name) for name, _ in d.templates]
        out += [("example", e.name) for e in d.examples]
        out += [(a, "") for a in DETAIL_ACTIONS]
        return out

    def first_action(self) -> int:
        return len(self.items()) - len(DETAIL_ACTIONS)

    @property
    def selected(self) -> int:
        # A fresh detail view starts on the first action.
        return self.first_action() if self.cursor < 0 else self.cursor


FormField = Literal["directory", "name"]


@dataclass(frozen=True)
class Form:
    pack: str
    back: "Screen"
    template: str | None = None
    directory: str = "."
    name: str = ""
    focus: FormField = "name"
    caret: int = 0
    error: str | None = None

    def value(self) -> str:
        return self.directory if self.focus == "directory" else self.name

    def with_value(self, text: str, caret: int) -> Form:
        if self.focus == "directory":
            return replace(self, directory=text, caret=caret, error=None)
        return replace(self, name=text, caret=caret, error=None)


@dataclass(frozen=True)
class Browse:
    items: tuple[PackSummary, ...] = ()
    cursor: int = 0
    search: str = ""
    searching: bool = False
    loaded: bool = False
    expanded: PackRows | None = None
    expanded_cursor: int = 0


AddTab = Literal["installed", "browse"]


@dataclass(frozen=True)
class AddScreen:
    packs: tuple[PackRows, ...] = ()
    cursor: int = 0
    tab: AddTab = "installed"
    browse: Browse = field(default_factory=Browse)
    back: Optional["Screen"] = None

    def flat_rows(self) -> list[tuple[int, str, int]]:
        return [(pi, kind, idx) for pi, p in enumerate(self.packs) for kind, idx in p.rows()]

    def has_changes(self) -> bool:
        return any(p.has_changes() for p in self.packs)


@dataclass(frozen=True)
class Committed:
    summary: tuple[str, ...] = ()


@dataclass(frozen=True)
class Discarded:
    pass


Screen = Union[Loading, Error, PackList, Detail, Form, AddScreen, Committed, Discarded]

TERMINAL = (Committed, Discarded)
