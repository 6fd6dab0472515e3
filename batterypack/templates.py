from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .errors import ApplyError, NotFoundError
from .models import TemplateSpec


logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "default"

# Generator config that belongs to the template, not to the project.
_SKIP_NAMES = {"cargo-generate.toml", ".git"}
_PLACEHOLDER_RE = re.compile(r"\{\{\s*(project-name|project_name|crate_name)\s*\}\}")
_PROJECT_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")


@dataclass(frozen=True)
class TemplateChoice:
    """More than one template and none is called `default`: the user picks."""

    options: tuple[str, ...]


def resolve_template(
    templates: Mapping[str, TemplateSpec],
    name: str | None = None,
) -> tuple[str, TemplateSpec] | TemplateChoice:
    if name is not None:
        if name in templates:
            return name, templates[name]
        raise NotFoundError(
            kind="Template",
            name=name,
            hint="Available templates: " + (", ".join(sorted(templates)) or "none"),
        )
    if not templates:
        raise NotFoundError(kind="Template", name=DEFAULT_TEMPLATE, hint="The pack declares no templates.")
    if len(templates) == 1:
        only = next(iter(templates))
        return only, templates[only]
    if DEFAULT_TEMPLATE in templates:
        return DEFAULT_TEMPLATE, templates[DEFAULT_TEMPLATE]
    return TemplateChoice(options=tuple(sorted(templates)))


def crate_name(project_name: str) -> str:
    return project_name.replace("-", "_")


def check_project_name(project_name: str) -> str | None:
    """Return a message when `project_name` is not a usable crate name."""

    if not project_name.strip():
        return "project name must not be empty"
    if not _PROJECT_NAME_RE.match(project_name):
        return f"invalid project name {project_name!r}: use letters, digits, '-' and '_'"
    return None


def _render(text: str, project_name: str) -> str:
    def sub(m: re.Match[str]) -> str:
        return crate_name(project_name) if m.group(1) == "crate_name" else project_name

    return _PLACEHOLDER_RE.sub(sub, text)


def materialize_template(pack_dir: Path, template_path: str, target_dir: Path, project_name: str) -> Path:
    """Copy a template tree into `target_dir`, filling in the project name.

    File contents and file names have their placeholders substituted. Binary
    files are copied as they are. `target_dir` must not exist or be empty.
    """

    problem = check_project_name(project_name)
    if problem:
        raise ApplyError(message=problem)

    src = (pack_dir / template_path).resolve()
    if not src.is_dir():
        raise NotFoundError(kind="template directory", name=str(src))
    if target_dir.exists() and any(target_dir.iterdir()):
        raise ApplyError(message=f"{target_dir} already exists and is not empty")

    staging = target_dir.with_name(target_dir.name + ".tmp")
    if staging.exists():
        shutil.rmtree(staging)
    try:
        for path in sorted(src.rglob("*")):
            rel = path.relative_to(src)
            if any(part in _SKIP_NAMES for part in rel.parts):
                continue
            dest = staging / _render(str(rel), project_name)
            if path.is_dir():
                dest.mkdir(parents=True, exist_ok=True)
                continue
            dest.parent.mkdir(parents=True, exist_ok=True)
            raw = path.read_bytes()
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError:
                dest.write_bytes(raw)
                continue
            dest.write_text(_render(text, project_name), encoding="utf-8")
        staging.mkdir(parents=True, exist_ok=True)
        if target_dir.exists():
            target_dir.rmdir()
        staging.replace(target_dir)
    except OSError as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise ApplyError(message=f"unable to create {target_dir}: {e}") from e

    logger.info("created %s from %s", target_dir, src)
    return target_dir
