from __future__ import annotations

from ..models import short_name
from .screens import (
    AddScreen,
    Committed,
    Detail,
    Discarded,
    Error,
    Form,
    Loading,
    PackList,
    PackRows,
    Screen,
)


def _mark(selected: bool) -> str:
    return "> " if selected else "  "


def _check(on: bool) -> str:
    return "[x]" if on else "[ ]"


def _pack_lines(pack: PackRows, cursor: int | None) -> list[str]:
    """Rows of one pack; `cursor` is the selected row within the pack."""

    header = f"{short_name(pack.name)} {pack.version}"
    if not pack.installed:
        header += " (new)"
    lines = [header]
    for i, (kind, idx) in enumerate(pack.rows()):
        sel = cursor == i
        if kind == "group":
            g = pack.groups[idx]
            lines.append(f"{_mark(sel)}{_check(g.enabled)} {g.name}")
        else:
            c = pack.entries[idx]
            changed = " *" if c.changed else ""
            lines.append(f"{_mark(sel)}    {_check(c.enabled)} {c.name} {c.label()}{changed}")
    return lines


def _add_lines(screen: AddScreen) -> list[str]:
    tabs = "[Installed]  Browse" if screen.tab == "installed" else " Installed  [Browse]"
    lines = [tabs, ""]
    if screen.tab == "installed":
        if not screen.packs:
            lines.append("No battery packs installed. Press Tab to browse.")
        offset = 0
        for p in screen.packs:
            n = len(p.rows())
            local = screen.cursor - offset if offset <= screen.cursor < offset + n else None
            lines.extend(_pack_lines(p, local))
            lines.append("")
            offset += n
        hint = "Space toggle  d dependency kind  Enter apply  Tab browse  Esc cancel"
        if screen.has_changes():
            hint = "* pending  " + hint
        lines.append(hint)
        return lines

    b = screen.browse
    if b.expanded is not None:
        lines.extend(_pack_lines(b.expanded, b.expanded_cursor))
        lines.append("")
        lines.append("Space toggle  Enter add to selection  Esc back")
        return lines
    if b.searching:
        lines.append(f"Search: {b.search}_")
    elif b.search:
        lines.append(f"Filter: {b.search}")
    for i, item in enumerate(b.items):
        lines.append(f"{_mark(i == b.cursor)}{item.short_name:<24} {item.version:<10} {item.description}")
    if b.loaded and not b.items:
        lines.append("No matching battery packs.")
    lines.append("")
    lines.append("Enter expand  / search  Tab installed  Esc cancel")
    return lines


def _detail_lines(screen: Detail) -> list[str]:
    d = screen.detail
    lines = [f"{d.name} {d.version}"]
    if d.description:
        lines.append(d.description)
    if d.repository:
        lines.append(d.repository)
    lines.append("")

    sections = {
        "crate": "Crates",
        "extends": "Extends",
        "template": "Templates",
        "example": "Examples",
    }
    labels = {"open": "Open on crates.io", "add": "Add to project", "new": "New project from template"}
    current = None
    for i, (kind, name) in enumerate(screen.items()):
        title = sections.get(kind, "Actions")
        if title != current:
            if current is not None:
                lines.append("")
            lines.append(title + ":")
            current = title
        text = labels.get(kind, name)
        if kind == "template":
            desc = dict(d.templates)[name].description
            if desc:
                text += f" - {desc}"
        lines.append(f"{_mark(i == screen.selected)}{text}")
    if screen.notice:
        lines += ["", screen.notice]
    return lines


def _form_lines(screen: Form) -> list[str]:
    def field(label: str, value: str, focused: bool) -> str:
        if focused:
            value = value[: screen.caret] + "|" + value[screen.caret :]
        return f"{_mark(focused)}{label:<14}{value}"

    lines = [
        f"New project from {screen.pack}",
        "",
        field("Directory:", screen.directory, screen.focus == "directory"),
        field("Project name:", screen.name, screen.focus == "name"),
        "",
    ]
    if screen.error:
        lines.append(f"error: {screen.error}")
    lines.append("Tab switch field  Enter create  Esc cancel")
    return lines


def render(screen: Screen) -> list[str]:
    if isinstance(screen, Loading):
        return [screen.message]
    if isinstance(screen, Error):
        hint = "Enter retry  Esc back" if screen.retry is not None else "Esc back"
        return [f"error: {screen.message}", "", hint]
    if isinstance(screen, PackList):
        lines = [f"Battery packs matching {screen.filter!r}" if screen.filter else "Battery packs", ""]
        for i, item in enumerate(screen.items):
            lines.append(f"{_mark(i == screen.cursor)}{item.short_name:<24} {item.version:<10} {item.description}")
        if not screen.items:
            lines.append("No battery packs found.")
        lines += ["", "Enter details  a manage project  q quit"]
        return lines
    if isinstance(screen, Detail):
        return _detail_lines(screen)
    if isinstance(screen, Form):
        return _form_lines(screen)
    if isinstance(screen, AddScreen):
        return _add_lines(screen)
    if isinstance(screen, Committed):
        return ["Applied:", *[f"  {line}" for line in screen.summary]]
    if isinstance(screen, Discarded):
        return ["No changes made."]
    raise TypeError(f"unknown screen: {screen!r}")
