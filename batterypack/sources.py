from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from . import registry
from .config import Settings
from .errors import FetchError
from .local import LocalScan, list_local_packs
from .models import ExampleInfo, PackDetail, PackSummary
from .pack import PackSpec


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadedPack:
    spec: PackSpec
    origin: str  # "local" | "registry"
    root: Path | None = None


def _example_description(path: Path) -> str | None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        return None
    for line in lines:
        s = line.strip()
        if s.startswith("//!"):
            text = s[3:].strip()
            if text:
                return text
        elif s:
            break
    return None


def list_examples(root: Path | None) -> tuple[ExampleInfo, ...]:
    if root is None or not (root / "examples").is_dir():
        return ()
    out: list[ExampleInfo] = []
    for p in sorted((root / "examples").iterdir()):
        if p.suffix == ".rs" and p.is_file():
            out.append(ExampleInfo(name=p.stem, description=_example_description(p)))
        elif p.is_dir() and (p / "main.rs").is_file():
            out.append(ExampleInfo(name=p.name, description=_example_description(p / "main.rs")))
    return tuple(out)


def pack_detail(loaded: LoadedPack) -> PackDetail:
    spec = loaded.spec
    return PackDetail(
        name=spec.name,
        version=spec.version,
        description=spec.description,
        repository=spec.repository,
        crates=tuple(d.name for d in spec.visible_dependencies()),
        extends=tuple(spec.extends),
        templates=tuple(sorted(spec.templates.items())),
        examples=list_examples(loaded.root),
        local_path=str(loaded.root) if loaded.origin == "local" and loaded.root else None,
    )


@dataclass
class PackSource:
    """Local packs and the registry behind one interface.

    A local pack shadows a registry pack of the same name.
    """

    settings: Settings = field(default_factory=Settings)
    _scan: LocalScan | None = field(default=None, init=False, repr=False)

    def local(self) -> LocalScan:
        if self._scan is None:
            self._scan = list_local_packs(self.settings.local_paths)
        return self._scan

    def list_packs(self, name_filter: str | None = None) -> list[PackSummary]:
        """Local packs plus registry packs not shadowed by one.

        A registry failure is logged and skipped while local packs were found.
        """

        local = [p.summary() for p in self.local().packs if not name_filter or name_filter.lower() in p.name.lower()]
        seen = {p.name for p in local}
        try:
            remote = registry.find_packs(name_filter, base_url=self.settings.registry_url, timeout_s=self.settings.timeout_s)
        except FetchError as e:
            if not local:
                raise
            logger.warning("registry unavailable, listing local packs only: %s", e)
            remote = []
        out = local + [p for p in remote if p.name not in seen]
        out.sort(key=lambda p: p.name)
        return out

    def load(self, name: str, version_spec: str | None = None) -> LoadedPack:
        hit = self.local().get(name)
        if hit is not None:
            logger.debug("using local %s from %s", name, hit.path)
            return LoadedPack(spec=hit.spec, origin="local", root=hit.path)
        rp = registry.fetch_pack(name, version_spec, base_url=self.settings.registry_url, timeout_s=self.settings.timeout_s)
        return LoadedPack(spec=rp.spec, origin="registry", root=rp.local_root)

    def detail(self, name: str) -> PackDetail:
        return pack_detail(self.load(name))
