from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from . import paths
from .errors import NotFoundError, ParseError
from .manifest import Manifest
from .tomldoc import loads


logger = logging.getLogger(__name__)


def _is_workspace_root(manifest: Path) -> bool:
    try:
        return "workspace" in loads(manifest.read_text(encoding="utf-8"), path=manifest)
    except OSError:
        return False


def find_workspace_root(manifest: Path) -> Path | None:
    """The Cargo.toml with a `[workspace]` table at or above `manifest`."""

    if _is_workspace_root(manifest):
        return manifest
    for d in manifest.parent.parents:
        candidate = d / paths.MANIFEST_NAME
        if candidate.is_file() and _is_workspace_root(candidate):
            return candidate
    return None


@dataclass(frozen=True)
class ProjectContext:
    """The project being edited: its manifest and, if any, its workspace root.

    Passed explicitly to everything that reads or writes the project.
    """

    manifest_path: Path
    workspace_path: Path | None = None

    @property
    def root(self) -> Path:
        return self.manifest_path.parent

    @property
    def in_workspace(self) -> bool:
        return self.workspace_path is not None

    @classmethod
    def discover(cls, start: Path | None = None) -> ProjectContext:
        root = paths.work_root(start)
        manifest = root / paths.MANIFEST_NAME
        if not manifest.is_file():
            raise NotFoundError(kind="Cargo.toml", name=str(root), hint="Run inside a Cargo project.")
        try:
            workspace = find_workspace_root(manifest)
        except ParseError as e:
            # A broken parent workspace should not block a standalone package.
            if e.path == manifest:
                raise
            logger.warning("ignoring workspace manifest %s: %s", e.path, e.message)
            workspace = None
        return cls(manifest_path=manifest, workspace_path=workspace)

    def load(self) -> Manifest:
        model = Manifest.read(self.manifest_path)
        if self.workspace_path is not None and self.workspace_path != self.manifest_path:
            model.link_workspace(Manifest.read(self.workspace_path))
        return model

    def save(self, model: Manifest) -> list[Path]:
        """Write the manifest and its linked workspace manifest, if separate."""

        written = [model.write(self.manifest_path)]
        ws = model.workspace
        if ws is not None and ws is not model and self.workspace_path is not None:
            written.append(ws.write(self.workspace_path))
        for p in written:
            logger.info("wrote %s", p)
        return written
