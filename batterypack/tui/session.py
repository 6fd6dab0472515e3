"""Interactive session state machine.

`transition(screen, event)` is a pure, total function returning the next
screen and at most one effect for the runner to perform. `Session` wraps it
with the one impure step: on a Commit effect it builds a change-set against
the project manifest and applies it through the sync engine.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Optional

from ..errors import ApplyError
from ..manifest import Manifest
from ..models import ResolvedDependency
from ..resolver import higher_version
from ..sync import Action, Change, ChangeSet, RegisterPack, apply, plan_add_many
from ..templates import check_project_name
from . import events as ev
from .screens import (
    AddPayload,
    AddScreen,
    AddTarget,
    Browse,
    BrowseTarget,
    Committed,
    CreateTarget,
    Detail,
    DetailTarget,
    Discarded,
    Error,
    ExpandTarget,
    Form,
    ListTarget,
    Loading,
    PackList,
    PackRows,
    Screen,
    TERMINAL,
)


logger = logging.getLogger(__name__)

Result = tuple[Screen, Optional[ev.Effect]]

CRATES_IO = "https://crates.io/crates/"


def _wrap(index: int, count: int, step: int) -> int:
    if count <= 0:
        return 0
    return (index + step) % count


def _quit() -> Result:
    return Discarded(), ev.Quit()


def _cancel(back: Screen | None) -> Result:
    if back is None:
        return _quit()
    return back, None


def _load(target, back: Screen | None) -> Result:
    return Loading(target=target, back=back), ev.Fetch(target)


def _nav_step(key: str) -> int:
    if key in (ev.UP, "k", ev.BACKTAB):
        return -1
    if key in (ev.DOWN, "j", ev.TAB):
        return 1
    return 0


# ----------------------------------------------------------------------
# Completion events
# ----------------------------------------------------------------------


def _on_loaded(screen: Loading, payload) -> Screen:
    target = screen.target
    back = screen.back

    if isinstance(target, ListTarget):
        return PackList(items=tuple(payload), filter=target.filter)

    if isinstance(target, DetailTarget):
        return Detail(detail=payload, back=back)

    if isinstance(target, AddTarget):
        assert isinstance(payload, AddPayload)
        add = AddScreen(packs=payload.packs, back=back)
        focus = payload.focus
        if focus is None:
            return add
        for pi, p in enumerate(payload.packs):
            if p.name == focus.name:
                first = next((i for i, (row_pack, _, _) in enumerate(add.flat_rows()) if row_pack == pi), 0)
                return replace(add, cursor=first)
        return replace(add, tab="browse", browse=Browse(expanded=focus))

    if isinstance(target, BrowseTarget):
        add = back if isinstance(back, AddScreen) else AddScreen()
        browse = replace(
            add.browse,
            items=tuple(payload),
            cursor=0,
            loaded=True,
            searching=False,
            search=target.filter or "",
        )
        return replace(add, tab="browse", browse=browse)

    if isinstance(target, ExpandTarget):
        add = back if isinstance(back, AddScreen) else AddScreen()
        for pi, p in enumerate(add.packs):
            if p.name == payload.name:
                # Already on the installed tab; select it there.
                first = next((i for i, (row_pack, _, _) in enumerate(add.flat_rows()) if row_pack == pi), 0)
                return replace(add, tab="installed", cursor=first)
        return replace(add, tab="browse", browse=replace(add.browse, expanded=payload, expanded_cursor=0))

    if isinstance(target, CreateTarget):
        if isinstance(back, Detail):
            return replace(back, notice=f"Created {payload}")
        return Committed(summary=(f"Created {payload}",))

    raise TypeError(f"unknown loading target: {target!r}")


# ----------------------------------------------------------------------
# Per-screen key handling
# ----------------------------------------------------------------------


def _error_key(screen: Error, key: str) -> Result:
    if key in (ev.ENTER, "r") and screen.retry is not None:
        return _load(screen.retry, screen.back)
    if key in (ev.ESC, "q"):
        return _cancel(screen.back)
    return screen, None


def _loading_key(screen: Loading, key: str) -> Result:
    if key == ev.ESC:
        return _cancel(screen.back)
    if key == "q":
        return _quit()
    return screen, None


def _list_key(screen: PackList, key: str) -> Result:
    step = _nav_step(key) if key not in (ev.TAB, ev.BACKTAB) else 0
    if step:
        return replace(screen, cursor=_wrap(screen.cursor, len(screen.items), step)), None
    if key == ev.ENTER and screen.items:
        return _load(DetailTarget(screen.items[screen.cursor].name), screen)
    if key == "a":
        return _load(AddTarget(), screen)
    if key in ("q", ev.ESC):
        return _quit()
    return screen, None


def _repo_url(repository: str | None, path: str, *, blob: bool = False) -> str | None:
    if not repository:
        return None
    base = repository.rstrip("/")
    if base.endswith(".git"):
        base = base[: -len(".git")]
    if "github.com" not in base:
        return base
    return f"{base}/{'blob' if blob else 'tree'}/main/{path.lstrip('./')}"


def _detail_enter(screen: Detail) -> Result:
    items = screen.items()
    kind, name = items[screen.selected]
    d = screen.detail

    if kind == "crate":
        return screen, ev.OpenUrl(CRATES_IO + name)
    if kind == "extends":
        return _load(DetailTarget(name), screen)
    if kind == "template":
        tmpl = dict(d.templates)[name]
        url = _repo_url(d.repository, tmpl.path)
        if url is None:
            return replace(screen, notice="No repository URL to open"), None
        return screen, ev.OpenUrl(url)
    if kind == "example":
        url = _repo_url(d.repository, f"examples/{name}.rs", blob=True)
        if url is None:
            return replace(screen, notice="No repository URL to open"), None
        return screen, ev.OpenUrl(url)
    if kind == "open":
        return screen, ev.OpenUrl(CRATES_IO + d.name)
    if kind == "add":
        return _load(AddTarget(focus=d.name), screen)
    return Form(pack=d.name, back=screen), None


def _detail_key(screen: Detail, key: str) -> Result:
    step = _nav_step(key)
    if step:
        return replace(screen, cursor=_wrap(screen.selected, len(screen.items()), step), notice=None), None
    if key == ev.ENTER:
        return _detail_enter(screen)
    if key == "n":
        return Form(pack=screen.detail.name, back=screen), None
    if key == ev.ESC:
        return _cancel(screen.back)
    if key == "q":
        return _quit()
    return screen, None


def _form_key(screen: Form, key: str) -> Result:
    text = screen.value()
    caret = min(screen.caret, len(text))

    if key in (ev.TAB, ev.BACKTAB):
        focus = "directory" if screen.focus == "name" else "name"
        moved = replace(screen, focus=focus)
        return replace(moved, caret=len(moved.value())), None
    if key == ev.ESC:
        return screen.back, None
    if key == ev.ENTER:
        problem = check_project_name(screen.name)
        if problem is None and not screen.directory.strip():
            problem = "directory must not be empty"
        if problem:
            return replace(screen, error=problem), None
        target = CreateTarget(pack=screen.pack, template=screen.template, directory=screen.directory, name=screen.name)
        return Loading(target=target, back=screen.back), ev.NewProject(target)
    if key == ev.BACKSPACE:
        if caret == 0:
            return screen, None
        return screen.with_value(text[: caret - 1] + text[caret:], caret - 1), None
    if key == ev.DELETE:
        return screen.with_value(text[:caret] + text[caret + 1 :], caret), None
    if key == ev.LEFT:
        return replace(screen, caret=max(0, caret - 1)), None
    if key == ev.RIGHT:
        return replace(screen, caret=min(len(text), caret + 1)), None
    if key == ev.HOME:
        return replace(screen, caret=0), None
    if key == ev.END:
        return replace(screen, caret=len(text)), None
    if len(key) == 1 and key.isprintable():
        return screen.with_value(text[:caret] + key + text[caret:], caret + 1), None
    return screen, None


# ----------------------------------------------------------------------
# Add screen toggles
# ----------------------------------------------------------------------


def toggle_group(pack: PackRows, index: int) -> PackRows:
    """Flip one group.

    Turning a group off disables the crates it owns exclusively; a crate
    that another enabled group also lists stays enabled. Turning it on
    enables every crate it lists.
    """

    target = pack.groups[index]
    groups = list(pack.groups)
    groups[index] = replace(target, enabled=not target.enabled)

    entries = list(pack.entries)
    for ci, c in enumerate(entries):
        if c.name not in target.members:
            continue
        if not target.enabled:
            entries[ci] = replace(c, enabled=True)
            continue
        still_needed = any(g.enabled and g.name != target.name and c.name in g.members for g in groups)
        if not still_needed:
            entries[ci] = replace(c, enabled=False)
    return replace(pack, groups=tuple(groups), entries=tuple(entries), keep_all=False)


def toggle_crate(pack: PackRows, index: int) -> PackRows:
    """Flip one crate; a crate another enabled group needs stays on."""

    c = pack.entries[index]
    if c.enabled and any(g.enabled and g.name != c.group and c.name in g.members for g in pack.groups):
        return pack
    entries = list(pack.entries)
    entries[index] = replace(c, enabled=not c.enabled)
    return replace(pack, entries=tuple(entries))


def cycle_kind(pack: PackRows, index: int) -> PackRows:
    entries = list(pack.entries)
    entries[index] = replace(entries[index], kind=entries[index].kind.cycle())
    return replace(pack, entries=tuple(entries))


def _toggle_row(pack: PackRows, row: tuple[str, int]) -> PackRows:
    kind, idx = row
    if kind == "group":
        return toggle_group(pack, idx)
    return toggle_crate(pack, idx)


def _with_pack(screen: AddScreen, index: int, pack: PackRows) -> AddScreen:
    packs = list(screen.packs)
    packs[index] = pack
    return replace(screen, packs=tuple(packs))


def selection_for(pack: PackRows) -> ev.PackSelection:
    groups = ("all",) if pack.keep_all else tuple(sorted(pack.enabled_groups()))
    add = tuple(
        (c.name, c.kind) for c in pack.entries if c.enabled and (not c.originally_enabled or c.kind is not c.original_kind)
    )
    remove = tuple(
        (c.name, c.original_kind)
        for c in pack.entries
        if c.originally_enabled and (not c.enabled or c.kind is not c.original_kind)
    )
    return ev.PackSelection(
        pack=pack.name,
        spec=pack.spec,
        installed=pack.installed,
        groups=groups,
        add=add,
        remove=remove,
        register=not pack.installed or groups != pack.active,
        registered_version=pack.registered_version,
    )


def _commit(screen: AddScreen) -> Result:
    if not screen.has_changes():
        return screen, None
    selections = tuple(selection_for(p) for p in screen.packs if p.has_changes())
    return Committed(summary=tuple(s.pack for s in selections)), ev.Commit(selections)


def _installed_key(screen: AddScreen, key: str) -> Result:
    rows = screen.flat_rows()
    step = _nav_step(key) if key not in (ev.TAB, ev.BACKTAB) else 0
    if step:
        return replace(screen, cursor=_wrap(screen.cursor, len(rows), step)), None
    if not rows:
        if key == ev.ESC:
            return _cancel(screen.back)
        if key == "q":
            return _quit()
        return screen, None

    pi, kind, idx = rows[min(screen.cursor, len(rows) - 1)]
    if key == ev.SPACE:
        return _with_pack(screen, pi, _toggle_row(screen.packs[pi], (kind, idx))), None
    if key == "d" and kind == "crate":
        return _with_pack(screen, pi, cycle_kind(screen.packs[pi], idx)), None
    if key == ev.ENTER:
        return _commit(screen)
    if key == ev.ESC:
        # Pending toggles are dropped with the screen.
        return _cancel(screen.back)
    if key == "q":
        return _quit()
    return screen, None


def _browse_key(screen: AddScreen, key: str) -> Result:
    b = screen.browse

    if b.searching:
        if key == ev.ENTER:
            target = BrowseTarget(filter=b.search or None)
            return _load(target, replace(screen, browse=replace(b, searching=False)))
        if key == ev.ESC:
            return replace(screen, browse=replace(b, searching=False, search="")), None
        if key == ev.BACKSPACE:
            return replace(screen, browse=replace(b, search=b.search[:-1])), None
        if len(key) == 1 and key.isprintable():
            return replace(screen, browse=replace(b, search=b.search + key)), None
        return screen, None

    if b.expanded is not None:
        rows = b.expanded.rows()
        step = _nav_step(key) if key not in (ev.TAB, ev.BACKTAB) else 0
        if step:
            return replace(screen, browse=replace(b, expanded_cursor=_wrap(b.expanded_cursor, len(rows), step))), None
        if key == ev.SPACE and rows:
            row = rows[min(b.expanded_cursor, len(rows) - 1)]
            return replace(screen, browse=replace(b, expanded=_toggle_row(b.expanded, row))), None
        if key == "d" and rows:
            kind, idx = rows[min(b.expanded_cursor, len(rows) - 1)]
            if kind == "crate":
                return replace(screen, browse=replace(b, expanded=cycle_kind(b.expanded, idx))), None
            return screen, None
        if key == ev.ENTER:
            packs = [p for p in screen.packs if p.name != b.expanded.name] + [b.expanded]
            start = sum(len(p.rows()) for p in packs[:-1])
            return replace(screen, packs=tuple(packs), tab="installed", cursor=start, browse=replace(b, expanded=None)), None
        if key == ev.ESC:
            return replace(screen, browse=replace(b, expanded=None, expanded_cursor=0)), None
        return screen, None

    step = _nav_step(key) if key not in (ev.TAB, ev.BACKTAB) else 0
    if step:
        return replace(screen, browse=replace(b, cursor=_wrap(b.cursor, len(b.items), step))), None
    if key == ev.ENTER and b.items:
        return _load(ExpandTarget(b.items[b.cursor].name), screen)
    if key == "/":
        return replace(screen, browse=replace(b, searching=True)), None
    if key == ev.ESC:
        return _cancel(screen.back)
    if key == "q":
        return _quit()
    return screen, None


def _add_key(screen: AddScreen, key: str) -> Result:
    searching = screen.tab == "browse" and screen.browse.searching
    if key == ev.TAB and not searching:
        if screen.tab == "installed":
            moved = replace(screen, tab="browse")
            if not screen.browse.loaded and screen.browse.expanded is None:
                return _load(BrowseTarget(), moved)
            return moved, None
        return replace(screen, tab="installed"), None
    if screen.tab == "installed":
        return _installed_key(screen, key)
    return _browse_key(screen, key)


_KEY_HANDLERS: dict[type, Callable[..., Result]] = {
    Error: _error_key,
    Loading: _loading_key,
    PackList: _list_key,
    Detail: _detail_key,
    Form: _form_key,
    AddScreen: _add_key,
}


def transition(screen: Screen, event: ev.Event) -> Result:
    """Next screen and optional effect for `event` on `screen`."""

    if isinstance(screen, TERMINAL):
        return screen, None

    if isinstance(event, (ev.Loaded, ev.LoadFailed)):
        if not isinstance(screen, Loading) or screen.target != event.target:
            # A result for a screen the user already left.
            return screen, None
        if isinstance(event, ev.LoadFailed):
            return Error(message=event.message, retry=event.target if event.retryable else None, back=screen.back), None
        return _on_loaded(screen, event.payload), None

    handler = _KEY_HANDLERS[type(screen)]
    return handler(screen, event.name)


# ----------------------------------------------------------------------
# Commit path
# ----------------------------------------------------------------------


def build_change_set(selections: tuple[ev.PackSelection, ...], model: Manifest, *, use_workspace: bool = False) -> ChangeSet:
    """Turn Add-screen selections into one change-set.

    Switched-off crates become REMOVE changes for the table they were in;
    switched-on crates go through `plan_add_many`, so crates the manifest
    already has only gain missing features. A crate moved to another
    table carries its current version and features along.
    """

    removals: list[Change] = []
    recommendations = []
    registrations: list[RegisterPack] = []
    for sel in selections:
        for name, kind in sel.remove:
            removals.append(Change(pack=sel.pack, dependency=name, kind=kind, action=Action.REMOVE))

        moved = dict(sel.remove)
        resolved = sel.spec.resolve_group(sel.groups)
        recs: dict[str, ResolvedDependency] = {}
        for name, kind in sel.add:
            base = resolved.get(name)
            if base is None:
                decl = sel.spec.dependencies[name]
                base = ResolvedDependency(name=name, version=decl.version, kind=decl.kind, features=decl.features, optional=decl.optional)
            prev = model.get_dependency(moved[name], name) if name in moved else None
            if prev is not None:
                # A crate changing tables keeps the user's version and features.
                version = higher_version(prev.version, base.version) if prev.version else base.version
                base = replace(base, version=version, features=base.features | prev.features)
            recs[name] = replace(base, kind=kind)
        if recs:
            recommendations.append((sel.pack, recs))

        if sel.register:
            registrations.append(
                RegisterPack(pack=sel.pack, version=sel.registered_version or sel.spec.version, features=sel.groups)
            )

    adds = plan_add_many(recommendations, model) if recommendations else ChangeSet()
    return ChangeSet(
        changes=tuple(removals) + adds.changes,
        registrations=tuple(registrations),
        use_workspace=use_workspace,
    )


class Session:
    """Owns the current screen and the project manifest for one run."""

    def __init__(self, model: Manifest, *, screen: Screen | None = None, use_workspace: bool = False) -> None:
        self.model = model
        self.screen: Screen = screen if screen is not None else Loading(ListTarget())
        self.use_workspace = use_workspace
        self.committed: ChangeSet | None = None

    @property
    def done(self) -> bool:
        return isinstance(self.screen, TERMINAL)

    def start(self) -> ev.Effect | None:
        if isinstance(self.screen, Loading):
            return ev.Fetch(self.screen.target)
        return None

    def dispatch(self, event: ev.Event) -> ev.Effect | None:
        screen, effect = transition(self.screen, event)
        if isinstance(effect, ev.Commit):
            change_set = build_change_set(effect.selections, self.model, use_workspace=self.use_workspace)
            try:
                self.model = apply(change_set, self.model)
            except ApplyError as e:
                logger.warning("commit failed: %s", e)
                self.screen = Error(message=str(e), back=self.screen)
                return None
            self.committed = change_set
            screen = Committed(summary=tuple(change_set.describe()))
        self.screen = screen
        return effect
