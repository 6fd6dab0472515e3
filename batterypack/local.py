from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .errors import NotFoundError, ParseError, SpecError
from .models import PackSummary, is_pack_name
from .pack import PackSpec, load_pack_spec
from .tomldoc import loads


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalPack:
    path: Path
    spec: PackSpec

    @property
    def name(self) -> str:
        return self.spec.name

    def summary(self) -> PackSummary:
        return PackSummary(
            name=self.spec.name,
            version=self.spec.version,
            description=self.spec.description,
            repository=self.spec.repository,
            local_path=str(self.path),
        )


@dataclass(frozen=True)
class LocalScan:
    packs: tuple[LocalPack, ...] = ()
    problems: tuple[SpecError, ...] = ()

    def get(self, name: str) -> LocalPack | None:
        for p in self.packs:
            if p.name == name:
                return p
        return None


def _declares_pack(manifest: Path) -> bool:
    try:
        data = loads(manifest.read_text(encoding="utf-8"), path=manifest)
    except (OSError, ParseError):
        # Let load_pack_spec report it if the directory name says it is a pack.
        return is_pack_name(manifest.parent.name)
    pkg = data.get("package")
    return isinstance(pkg, dict) and isinstance(pkg.get("name"), str) and is_pack_name(pkg["name"])


def _candidates(root: Path) -> list[Path]:
    """Pack directories under `root`: itself, its children, or `src/*`."""

    if (root / "Cargo.toml").is_file() and _declares_pack(root / "Cargo.toml"):
        return [root]
    out: list[Path] = []
    for parent in (root, root / "src"):
        if not parent.is_dir():
            continue
        for child in sorted(parent.iterdir()):
            manifest = child / "Cargo.toml"
            if child.is_dir() and manifest.is_file() and _declares_pack(manifest):
                out.append(child)
    return out


def list_local_packs(paths: Iterable[Path]) -> LocalScan:
    """Discover packs on disk.

    Each path is a pack directory or a directory holding pack directories.
    A path that does not exist raises NotFoundError; a malformed pack is
    recorded in `problems` and skipped.
    """

    packs: dict[str, LocalPack] = {}
    problems: list[SpecError] = []
    for raw in paths:
        root = Path(raw).expanduser()
        if not root.exists():
            raise NotFoundError(kind="pack path", name=str(root))
        for pack_dir in _candidates(root):
            try:
                spec = load_pack_spec(pack_dir)
            except SpecError as e:
                logger.warning("skipping %s: %s", pack_dir, e)
                problems.append(e)
                continue
            if spec.name in packs:
                # Earlier paths win.
                logger.debug("%s at %s shadowed by %s", spec.name, pack_dir, packs[spec.name].path)
                continue
            packs[spec.name] = LocalPack(path=pack_dir.resolve(), spec=spec)
    return LocalScan(packs=tuple(sorted(packs.values(), key=lambda p: p.name)), problems=tuple(problems))
