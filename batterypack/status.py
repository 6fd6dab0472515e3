from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from .manifest import Manifest
from .models import DepKind
from .pack import PackSpec
from .resolver import is_older
from .sync import Action, plan_sync


@dataclass(frozen=True)
class Drift:
    """A dependency that differs from what its pack recommends."""

    pack: str
    dependency: str
    kind: DepKind
    action: Action
    current: str | None
    recommended: str | None
    missing_features: frozenset[str] = frozenset()

    def describe(self) -> str:
        if self.action is Action.ADD:
            return f"{self.dependency}: missing (recommended {self.recommended})"
        if self.action is Action.BUMP_VERSION:
            return f"{self.dependency}: {self.current} -> {self.recommended}"
        return f"{self.dependency}: missing features {', '.join(sorted(self.missing_features))}"


@dataclass(frozen=True)
class PackStatus:
    name: str
    registered_version: str | None
    available_version: str | None
    drift: tuple[Drift, ...] = ()

    @property
    def pack_outdated(self) -> bool:
        if self.registered_version is None or self.available_version is None:
            return False
        return is_older(self.registered_version, self.available_version)

    @property
    def up_to_date(self) -> bool:
        return not self.drift and not self.pack_outdated


def project_status(model: Manifest, specs: Mapping[str, PackSpec]) -> list[PackStatus]:
    """Per installed pack, what `sync` would change and whether a newer pack exists."""

    out: list[PackStatus] = []
    for reg in model.tracked_packs():
        name = reg.name
        spec = specs.get(name)
        registered = reg.version
        if registered is None:
            build = model.get_dependency(DepKind.BUILD, name)
            registered = build.version if build is not None else None
        drift: list[Drift] = []
        if spec is not None:
            for ch in plan_sync([reg], {name: spec}, model):
                current = model.get_dependency(ch.kind, ch.dependency)
                drift.append(
                    Drift(
                        pack=name,
                        dependency=ch.dependency,
                        kind=ch.kind,
                        action=ch.action,
                        current=current.version if current else None,
                        recommended=ch.version if ch.action is not Action.ADD_FEATURES else None,
                        missing_features=ch.features if ch.action is Action.ADD_FEATURES else frozenset(),
                    )
                )
        out.append(
            PackStatus(
                name=name,
                registered_version=registered,
                available_version=spec.version if spec is not None else None,
                drift=tuple(drift),
            )
        )
    return out
