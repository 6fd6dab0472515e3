"""Small TOML writer helpers.

The manifest editor only renders the values it changes; everything else is
copied from the source text. We only implement the subset of TOML that
dependency and registration entries use.

Constraints:
- Deterministic output for a given input
- Key order is the caller's (existing keys first, new keys appended)
- stdlib-only formatting (parsing lives in tomldoc)
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Mapping


_BARE_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def toml_basic_string(s: str) -> str:
    """Quote a string as a TOML basic string.

    We use JSON encoding for predictable escaping + double quotes.
    """

    if not isinstance(s, str):
        raise TypeError("toml_basic_string: expected str")
    return json.dumps(s, ensure_ascii=False)


def toml_key(k: str) -> str:
    if not isinstance(k, str):
        raise TypeError("toml_key: expected str")
    return k if _BARE_KEY_RE.match(k) else toml_basic_string(k)


def toml_dotted_key(parts: Iterable[str]) -> str:
    return ".".join(toml_key(p) for p in parts)


def toml_bool(v: bool) -> str:
    if not isinstance(v, bool):
        raise TypeError("toml_bool: expected bool")
    return "true" if v else "false"


def toml_int(v: int) -> str:
    if not isinstance(v, int) or isinstance(v, bool):
        raise TypeError("toml_int: expected int")
    return str(v)


def toml_array(xs: Iterable[Any]) -> str:
    return "[" + ", ".join(toml_value(x) for x in xs) + "]"


def toml_value(v: Any) -> str:
    if isinstance(v, bool):
        return toml_bool(v)
    if isinstance(v, int) and not isinstance(v, bool):
        return toml_int(v)
    if isinstance(v, float):
        return repr(v)
    if isinstance(v, str):
        return toml_basic_string(v)
    if isinstance(v, (list, tuple)):
        return toml_array(v)
    if isinstance(v, Mapping):
        return toml_inline_table(v, key_order=list(v.keys()))
    raise TypeError(f"toml_value: unsupported type: {type(v).__name__}")


def toml_inline_table(tbl: Mapping[str, Any], *, key_order: list[str] | None = None) -> str:
    """Format a TOML inline table like `{ version = "4", features = ["derive"] }`.

    Without `key_order` keys are sorted.
    """

    if key_order is not None:
        keys = [k for k in key_order if k in tbl]
        keys.extend([k for k in sorted(tbl.keys()) if k not in keys])
    else:
        keys = sorted(tbl.keys())

    if not keys:
        return "{}"
    parts: list[str] = []
    for k in keys:
        if not isinstance(k, str):
            raise TypeError("toml_inline_table: keys must be strings")
        parts.append(f"{toml_key(k)} = {toml_value(tbl[k])}")
    inner = ", ".join(parts)
    return "{ " + inner + " }"
