from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path

from .errors import NotFoundError, ParseError, SpecError
from .models import is_pack_name
from .pack import PackSpec, load_pack_spec, parse_member
from .tomldoc import loads


@dataclass(frozen=True)
class Diagnostic:
    """A single finding. `rule` is a stable identifier users can grep for."""

    severity: str  # "error" | "warning"
    rule: str
    message: str

    def __str__(self) -> str:
        return f"{self.severity}[{self.rule}]: {self.message}"


@dataclass(frozen=True)
class ValidationReport:
    path: Path
    diagnostics: tuple[Diagnostic, ...] = ()
    spec: PackSpec | None = None

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "error"]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "warning"]

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        if self.ok:
            if self.warnings:
                return f"{self.path}: ok, {len(self.warnings)} warning(s)"
            return f"{self.path}: ok"
        return f"validation failed: {len(self.errors)} error(s), {len(self.warnings)} warning(s)"


def _error(rule: str, message: str) -> Diagnostic:
    return Diagnostic(severity="error", rule=rule, message=message)


def _warning(rule: str, message: str) -> Diagnostic:
    return Diagnostic(severity="warning", rule=rule, message=message)


def check_spec(spec: PackSpec, *, root: Path | None = None) -> list[Diagnostic]:
    out: list[Diagnostic] = []

    if not is_pack_name(spec.name):
        out.append(_error("format.crate.name", f"package name {spec.name!r} must end in '-battery-pack'"))
    if not spec.repository:
        out.append(_warning("format.crate.repository", "package.repository is not set; examples and templates cannot be linked"))
    if not spec.description:
        out.append(_warning("format.crate.description", "package.description is not set"))
    if not spec.visible_dependencies():
        out.append(_warning("format.crate.empty", "the pack declares no visible crates"))

    for group, members in spec.feature_groups.items():
        for raw in members:
            m = parse_member(raw)
            if m.name in spec.dependencies or (m.feature is None and m.name in spec.feature_groups):
                continue
            out.append(_error("format.features.unknown", f"features.{group}: {raw!r} names no dependency or feature"))

    for pattern in spec.hidden:
        if not any(n == pattern or fnmatchcase(n, pattern) for n in spec.dependencies):
            out.append(_warning("format.hidden.unused", f"hidden pattern {pattern!r} matches no dependency"))

    if root is not None:
        for name, tmpl in spec.templates.items():
            if not (root / tmpl.path).is_dir():
                out.append(_error("format.templates.path", f"template {name!r}: {tmpl.path} is not a directory"))
    return out


def validate_pack(path: Path) -> ValidationReport:
    """Validate the pack at `path` (a directory or its Cargo.toml).

    Raises NotFoundError when there is nothing to validate.
    """

    manifest = path / "Cargo.toml" if path.is_dir() else path
    if not manifest.exists():
        raise NotFoundError("pack manifest", str(manifest))
    root = manifest.parent

    try:
        raw = loads(manifest.read_text(encoding="utf-8"), path=manifest)
    except ParseError as e:
        return ValidationReport(path=root, diagnostics=(_error("format.toml", str(e)),))

    if "package" not in raw and "workspace" in raw:
        return ValidationReport(
            path=root,
            diagnostics=(
                _error(
                    "format.crate.workspace",
                    f"{manifest} is a workspace manifest; point at a battery pack crate instead",
                ),
            ),
        )

    try:
        spec = load_pack_spec(manifest)
    except SpecError as e:
        return ValidationReport(path=root, diagnostics=(_error("format.crate.spec", e.message),))

    return ValidationReport(path=root, diagnostics=tuple(check_spec(spec, root=root)), spec=spec)
