"""Format-preserving TOML documents.

A document is a list of tables (the root table first). Every table keeps the
raw lines it was parsed from: its header, its key/value entries and the
comment and blank lines between them. Editing replaces or appends single
entries, so untouched lines serialize byte-for-byte.

Parsing is delegated to tomllib twice: once to validate the whole document
(so malformed input never reaches the editor) and once per entry to find
where multi-line values end and to decode values.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from .errors import ParseError
from .toml_write import toml_dotted_key


try:  # Python 3.11+
    import tomllib as _tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover
    import tomli as _tomllib  # type: ignore


Key = tuple[str, ...]

_BARE_RE = re.compile(r"[A-Za-z0-9_-]+")
_LOCATION_RE = re.compile(r"\s*\(at line (\d+), column (\d+)\)$")


def parse_error(e: Exception, path: Path | None) -> ParseError:
    """ParseError for a TOMLDecodeError, with its line and column when known."""

    msg = str(getattr(e, "msg", e))
    lineno = getattr(e, "lineno", None)
    colno = getattr(e, "colno", None)
    m = _LOCATION_RE.search(msg)
    if m:
        # Older tomllib only reports the location inside the message.
        msg = msg[: m.start()]
        if lineno is None:
            lineno, colno = int(m.group(1)), int(m.group(2))
    return ParseError(path=path, message=msg, lineno=lineno, colno=colno)


def loads(text: str, *, path: Path | None = None) -> dict[str, Any]:
    """Parse TOML text, raising ParseError with a location on failure."""

    try:
        data = _tomllib.loads(text)
    except _tomllib.TOMLDecodeError as e:
        raise parse_error(e, path) from e
    return data


def _is_complete(chunk: str) -> bool:
    try:
        _tomllib.loads(chunk)
    except _tomllib.TOMLDecodeError:
        return False
    return True


def _decode_value(value_text: str) -> Any:
    return _tomllib.loads("v = " + value_text)["v"]


def _parse_key(s: str, i: int, *, stop: str) -> tuple[Key, int]:
    """Read a (possibly dotted, possibly quoted) key starting at `s[i]`.

    Returns the key parts and the index of the `stop` character.
    """

    parts: list[str] = []
    n = len(s)
    while True:
        while i < n and s[i] in " \t":
            i += 1
        if i >= n:
            raise ValueError(f"unterminated key in {s!r}")
        c = s[i]
        if c == '"':
            j = i + 1
            while j < n and s[j] != '"':
                j += 2 if s[j] == "\\" else 1
            parts.append(_decode_value(s[i : j + 1]))
            i = j + 1
        elif c == "'":
            j = s.index("'", i + 1)
            parts.append(s[i + 1 : j])
            i = j + 1
        else:
            m = _BARE_RE.match(s, i)
            if m is None:
                raise ValueError(f"invalid key in {s!r}")
            parts.append(m.group(0))
            i = m.end()
        while i < n and s[i] in " \t":
            i += 1
        if i < n and s[i] == ".":
            i += 1
            continue
        if i < n and s.startswith(stop, i):
            return tuple(parts), i
        raise ValueError(f"expected {stop!r} after key in {s!r}")


def _split_comment(s: str) -> tuple[str, str]:
    """Split a raw value into (value, suffix) where suffix is trailing
    whitespace plus an optional end-of-line comment."""

    i = 0
    n = len(s)
    depth = 0
    while i < n:
        c = s[i]
        if s.startswith('"""', i) or s.startswith("'''", i):
            delim = s[i : i + 3]
            j = i + 3
            while j < n and not s.startswith(delim, j):
                j += 2 if (delim == '"""' and s[j] == "\\") else 1
            i = j + 3
            # Up to two extra quotes may close a multi-line string.
            while i < n and s[i] == delim[0]:
                i += 1
            continue
        if c == '"':
            j = i + 1
            while j < n and s[j] != '"':
                j += 2 if s[j] == "\\" else 1
            i = j + 1
            continue
        if c == "'":
            i = s.index("'", i + 1) + 1
            continue
        if c in "[{":
            depth += 1
        elif c in "]}":
            depth -= 1
        elif c == "#":
            if depth == 0:
                value = s[:i].rstrip()
                return value, s[len(value) :]
            nl = s.find("\n", i)
            i = n if nl < 0 else nl
            continue
        i += 1
    value = s.rstrip()
    return value, s[len(value) :]


@dataclass
class Trivia:
    """A blank or comment-only line."""

    text: str

    def render(self) -> str:
        return self.text


@dataclass
class Entry:
    """A `key = value` entry. `prefix` is the raw text up to the value
    (indent, key, `=` and spacing); `suffix` is trailing space and comment."""

    key: Key
    prefix: str
    value_text: str
    suffix: str = ""

    @property
    def value(self) -> Any:
        return _decode_value(self.value_text)

    @property
    def indent(self) -> str:
        return self.prefix[: len(self.prefix) - len(self.prefix.lstrip(" \t"))]

    def render(self) -> str:
        return self.prefix + self.value_text + self.suffix


Item = Entry | Trivia


@dataclass
class Table:
    path: Key
    header: str | None = None
    array: bool = False
    items: list[Item] = field(default_factory=list)

    def entries(self) -> Iterator[Entry]:
        for it in self.items:
            if isinstance(it, Entry):
                yield it

    def keys(self) -> list[Key]:
        return [e.key for e in self.entries()]

    def get(self, key: Key) -> Entry | None:
        for e in self.entries():
            if e.key == key:
                return e
        return None

    def with_prefix(self, prefix: Key) -> list[Entry]:
        """Entries whose key is strictly under `prefix` (dotted keys)."""

        n = len(prefix)
        return [e for e in self.entries() if len(e.key) > n and e.key[:n] == prefix]

    def set(self, key: Key, value_text: str) -> Entry:
        """Replace the value of `key`, or append a new entry after the last one."""

        e = self.get(key)
        if e is not None:
            e.value_text = value_text
            return e
        last = -1
        indent = ""
        for idx, it in enumerate(self.items):
            if isinstance(it, Entry):
                last = idx
                indent = it.indent
        new = Entry(key=key, prefix=f"{indent}{toml_dotted_key(key)} = ", value_text=value_text)
        self.items.insert(last + 1, new)
        return new

    def remove(self, key: Key) -> bool:
        for idx, it in enumerate(self.items):
            if isinstance(it, Entry) and it.key == key:
                del self.items[idx]
                return True
        return False

    def render_lines(self) -> list[str]:
        lines: list[str] = []
        if self.header is not None:
            lines.append(self.header)
        for it in self.items:
            lines.append(it.render())
        return lines


def _parse_header(line: str) -> tuple[Key, bool]:
    s = line.strip()
    array = s.startswith("[[")
    start = line.index("[[" if array else "[") + (2 if array else 1)
    key, _ = _parse_key(line, start, stop="]]" if array else "]")
    return key, array


def _parse_entry(chunk: str) -> Entry:
    key, eq = _parse_key(chunk, 0, stop="=")
    i = eq + 1
    while i < len(chunk) and chunk[i] in " \t":
        i += 1
    value_text, suffix = _split_comment(chunk[i:])
    return Entry(key=key, prefix=chunk[:i], value_text=value_text, suffix=suffix)


@dataclass
class Document:
    tables: list[Table]
    newline: str = "\n"
    trailing_newline: bool = True
    path: Path | None = None

    @classmethod
    def parse(cls, text: str, *, path: Path | None = None) -> Document:
        loads(text, path=path)

        newline = "\r\n" if "\r\n" in text else "\n"
        lines = text.split(newline)
        trailing = bool(lines) and lines[-1] == ""
        if trailing:
            lines.pop()

        root = Table(path=())
        tables = [root]
        current = root
        i = 0
        n = len(lines)
        while i < n:
            line = lines[i]
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                current.items.append(Trivia(line))
                i += 1
                continue
            if stripped.startswith("["):
                key, array = _parse_header(line)
                current = Table(path=key, header=line, array=array)
                tables.append(current)
                i += 1
                continue
            j = i
            chunk = line
            while not _is_complete(chunk):
                j += 1
                if j >= n:
                    raise ParseError(path=path, message="unterminated value", lineno=i + 1, colno=1)
                chunk += "\n" + lines[j]
            try:
                current.items.append(_parse_entry(chunk))
            except ValueError as e:
                raise ParseError(path=path, message=str(e), lineno=i + 1, colno=1) from e
            i = j + 1

        return cls(tables=tables, newline=newline, trailing_newline=trailing, path=path)

    def to_text(self) -> str:
        lines: list[str] = []
        for t in self.tables:
            lines.extend(t.render_lines())
        text = "\n".join(lines)
        if self.newline != "\n":
            # Multi-line values were joined with "\n" while parsing.
            text = text.replace("\n", self.newline)
        if lines and self.trailing_newline:
            text += self.newline
        return text

    def data(self) -> dict[str, Any]:
        return loads(self.to_text(), path=self.path)

    def copy(self) -> Document:
        return copy.deepcopy(self)

    @property
    def root(self) -> Table:
        return self.tables[0]

    def find_table(self, path: Key) -> Table | None:
        for t in self.tables:
            if t.path == path and not t.array:
                return t
        return None

    def tables_under(self, prefix: Key) -> list[Table]:
        n = len(prefix)
        return [t for t in self.tables if len(t.path) > n and t.path[:n] == prefix and not t.array]

    def ensure_table(self, path: Key) -> Table:
        t = self.find_table(path)
        if t is not None:
            return t
        last = self.tables[-1]
        if (last.items or last.header is not None) and not (
            last.items and isinstance(last.items[-1], Trivia) and not last.items[-1].text.strip()
        ):
            last.items.append(Trivia(""))
        t = Table(path=path, header=f"[{toml_dotted_key(path)}]")
        self.tables.append(t)
        return t

    def insert_table(self, path: Key, *, after: Table) -> Table:
        """Add an empty `[path]` table directly after `after`.

        Blank lines that ended `after` move to the new table so the spacing
        before the next header stays as it was.
        """

        idx = next(i for i, t in enumerate(self.tables) if t is after)
        trailing: list[Item] = []
        while after.items and isinstance(after.items[-1], Trivia) and not after.items[-1].text.strip():
            trailing.insert(0, after.items.pop())
        after.items.append(Trivia(""))
        t = Table(path=path, header=f"[{toml_dotted_key(path)}]", items=trailing)
        self.tables.insert(idx + 1, t)
        return t

    def remove_table(self, path: Key) -> bool:
        for idx, t in enumerate(self.tables):
            if idx == 0 or t.path != path or t.array:
                continue
            del self.tables[idx]
            if idx == len(self.tables):
                prev = self.tables[-1]
                while prev.items and isinstance(prev.items[-1], Trivia) and not prev.items[-1].text.strip():
                    prev.items.pop()
            return True
        return False

    def lookup(self, path: Key, default: Any = None) -> Any:
        cur: Any = self.data()
        for part in path:
            if not isinstance(cur, dict) or part not in cur:
                return default
            cur = cur[part]
        return cur
