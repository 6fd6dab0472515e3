from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering


_OPERATORS = ("^", "~", "=", ">=", "<=", ">", "<")
_NUM_RE = re.compile(r"^\d+$")


@total_ordering
@dataclass(frozen=True)
class Semver:
    major: int
    minor: int
    patch: int
    pre: tuple[str, ...] = ()

    def _key(self) -> tuple:
        # A release sorts after any of its pre-releases; numeric identifiers
        # sort before alphanumeric ones.
        pre_key = tuple((0, int(p), "") if _NUM_RE.match(p) else (1, 0, p) for p in self.pre)
        return (self.major, self.minor, self.patch, not self.pre, pre_key)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Semver):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:  # pragma: no cover
        s = f"{self.major}.{self.minor}.{self.patch}"
        if self.pre:
            s += "-" + ".".join(self.pre)
        return s


def parse_semver(version: str) -> Semver:
    """Parse a full MAJOR.MINOR.PATCH[-PRE][+BUILD] version."""

    v = version.strip().split("+", 1)[0]
    core, _, pre = v.partition("-")
    parts = core.split(".")
    if len(parts) != 3:
        raise ValueError(f"invalid semver: {version!r}")
    try:
        nums = [int(p) for p in parts]
    except ValueError as e:
        raise ValueError(f"invalid semver: {version!r}") from e
    return Semver(nums[0], nums[1], nums[2], tuple(pre.split(".")) if pre else ())


def _normalize_spec_version(v: str) -> str:
    """Normalize a semver *spec* version to MAJOR.MINOR.PATCH.

    Supports shorthand specs like "1" or "1.2" by treating omitted parts as 0.
    """

    s = v.strip()
    core, sep, rest = s.partition("-")
    parts = core.split(".")
    if len(parts) == 1:
        core = f"{parts[0]}.0.0"
    elif len(parts) == 2:
        core = f"{parts[0]}.{parts[1]}.0"
    elif len(parts) != 3:
        raise ValueError(f"invalid semver: {v!r}")
    return core + sep + rest


def requirement_floor(req: str) -> Semver:
    """Lowest version a requirement string accepts: `"4.5"` and `"^4.5"` -> 4.5.0."""

    s = req.strip()
    if "," in s:
        s = s.split(",", 1)[0].strip()
    for op in sorted(_OPERATORS, key=len, reverse=True):
        if s.startswith(op):
            s = s[len(op) :].strip()
            break
    s = s.replace(".*", "").rstrip(".")
    if not s or s == "*":
        return Semver(0, 0, 0)
    return parse_semver(_normalize_spec_version(s))


def is_older(current: str, recommended: str) -> bool:
    """True when `current` is strictly older than `recommended`.

    Equal versions and unparsable requirements never count as older.
    """

    try:
        return requirement_floor(current) < requirement_floor(recommended)
    except ValueError:
        return False


def higher_version(a: str, b: str) -> str:
    """The higher of two requirements, independent of argument order.

    Ties (and unparsable input) fall back to the lexically larger string, so
    `"1.2.0"` beats `"1.2"`.
    """

    try:
        fa, fb = requirement_floor(a), requirement_floor(b)
    except ValueError:
        return max(a, b)
    if fa == fb:
        return max(a, b)
    return b if fa < fb else a


def _caret_upper(v: Semver) -> Semver:
    # Cargo caret semantics: bump the left-most non-zero.
    if v.major != 0:
        return Semver(v.major + 1, 0, 0)
    if v.minor != 0:
        return Semver(0, v.minor + 1, 0)
    return Semver(0, 0, v.patch + 1)


def satisfies(version: Semver, spec: str) -> bool:
    s = spec.strip()
    if not s:
        raise ValueError("empty version spec")
    if s == "*":
        return not version.pre

    if s.startswith("="):
        return version == parse_semver(_normalize_spec_version(s[1:]))

    if s.startswith("^") or s[0].isdigit():
        # Bare versions are caret requirements, as in Cargo manifests.
        base = parse_semver(_normalize_spec_version(s.lstrip("^")))
        upper = _caret_upper(base)
        return base <= version < upper

    raise ValueError(f"unsupported version spec: {spec!r}")


def pick_highest_satisfying(versions: list[str], spec: str | None = None) -> str | None:
    """Highest version matching `spec`; without a spec, the highest release."""

    parsed = [(parse_semver(v), v) for v in versions]
    if spec is None:
        ok = [raw for sv, raw in parsed if not sv.pre]
    else:
        ok = [raw for sv, raw in parsed if satisfies(sv, spec)]
    if not ok:
        return None
    return max(ok, key=lambda v: parse_semver(v))
