from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, unquote, urlparse
from urllib.request import urlopen

from .errors import FetchError, NotFoundError, SpecError
from .models import PackSummary
from .pack import PackSpec, parse_pack_spec
from .resolver import pick_highest_satisfying


logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_URL = "https://raw.githubusercontent.com/battery-pack-rs/registry/main"
DEFAULT_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class RegistryPack:
    """A pack fetched from the registry, with where its files live."""

    spec: PackSpec
    version: str
    manifest_url: str

    @property
    def local_root(self) -> Path | None:
        # Only file:// registries expose the pack tree (templates, examples).
        u = urlparse(self.manifest_url)
        if u.scheme != "file":
            return None
        return Path(unquote(u.path)).parent


def registry_base_url() -> str:
    return os.environ.get("BATTERYPACK_REGISTRY_URL", DEFAULT_REGISTRY_URL).rstrip("/")


def _join_url(base: str, *parts: str) -> str:
    b = base.rstrip("/")
    segs: list[str] = []
    for p in parts:
        for seg in str(p).split("/"):
            if not seg or seg == ".":
                continue
            segs.append(quote(seg, safe="-._~"))
    if not segs:
        return b
    return b + "/" + "/".join(segs)


def _fetch_bytes(url: str, *, what: tuple[str, str], timeout_s: float) -> bytes:
    try:
        with urlopen(url, timeout=timeout_s) as resp:  # nosec - registry URL is user-configured
            return resp.read()
    except HTTPError as e:
        if e.code == 404:
            raise NotFoundError(kind=what[0], name=what[1]) from e
        raise FetchError(url=url, message=f"HTTP {e.code}") from e
    except URLError as e:
        if isinstance(e.reason, FileNotFoundError):
            raise NotFoundError(kind=what[0], name=what[1]) from e
        raise FetchError(url=url, message=str(e.reason)) from e
    except OSError as e:
        raise FetchError(url=url, message=str(e)) from e


def _fetch_json(url: str, *, what: tuple[str, str], timeout_s: float) -> Any:
    raw = _fetch_bytes(url, what=what, timeout_s=timeout_s)
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise FetchError(url=url, message=f"invalid JSON: {e}") from e


def _expect_str(v: Any, *, url: str, ctx: str) -> str:
    if not isinstance(v, str) or not v.strip():
        raise FetchError(url=url, message=f"{ctx} must be a non-empty string")
    return v


def find_packs(
    name_filter: str | None = None,
    *,
    base_url: str | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> list[PackSummary]:
    """List packs from `<base>/index.json`, optionally filtered by substring.

    Expected shape:

    ```json
    {"packs": [{"name": "cli-battery-pack", "version": "0.3.0",
                "description": "...", "repository": "https://..."}]}
    ```
    """

    url = _join_url(base_url or registry_base_url(), "index.json")
    data = _fetch_json(url, what=("registry index", url), timeout_s=timeout_s)
    if not isinstance(data, dict) or not isinstance(data.get("packs"), list):
        raise FetchError(url=url, message="expected an object with a 'packs' array")

    out: list[PackSummary] = []
    for i, item in enumerate(data["packs"]):
        if not isinstance(item, dict):
            raise FetchError(url=url, message=f"packs[{i}] must be an object")
        name = _expect_str(item.get("name"), url=url, ctx=f"packs[{i}].name")
        if name_filter and name_filter.lower() not in name.lower():
            continue
        out.append(
            PackSummary(
                name=name,
                version=_expect_str(item.get("version"), url=url, ctx=f"packs[{i}].version"),
                description=str(item.get("description") or ""),
                repository=item.get("repository") or None,
            )
        )
    out.sort(key=lambda p: p.name)
    logger.debug("registry %s: %d pack(s) match %r", url, len(out), name_filter)
    return out


def _manifest_url(name: str, version_spec: str | None, *, base: str, timeout_s: float) -> tuple[str, str | None]:
    """Pick the manifest URL for `name`.

    A `<base>/<name>/versions.json` index selects the highest version that
    satisfies `version_spec`; without one the pack's single
    `<base>/<name>/Cargo.toml` is used.
    """

    versions_url = _join_url(base, name, "versions.json")
    try:
        data = _fetch_json(versions_url, what=("pack", name), timeout_s=timeout_s)
    except NotFoundError:
        if version_spec is not None:
            raise NotFoundError(kind="pack", name=f"{name}@{version_spec}", hint="The registry lists no versions.")
        return _join_url(base, name, "Cargo.toml"), None

    versions_raw = data.get("versions") if isinstance(data, dict) else None
    if not isinstance(versions_raw, dict):
        raise FetchError(url=versions_url, message="expected an object with a 'versions' object")

    candidates = [v for v, entry in versions_raw.items() if not (isinstance(entry, dict) and entry.get("yanked"))]
    try:
        chosen = pick_highest_satisfying(candidates, version_spec)
    except ValueError as e:
        raise FetchError(url=versions_url, message=str(e)) from e
    if chosen is None:
        raise NotFoundError(kind="pack", name=f"{name}@{version_spec or '*'}", hint="No published version matches.")

    entry = versions_raw[chosen]
    manifest = entry.get("manifest") if isinstance(entry, dict) else None
    rel = _expect_str(manifest or f"{chosen}/Cargo.toml", url=versions_url, ctx=f"versions[{chosen}].manifest")
    return _join_url(base, name, rel), chosen


def fetch_pack(
    name: str,
    version_spec: str | None = None,
    *,
    base_url: str | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> RegistryPack:
    base = (base_url or registry_base_url()).rstrip("/")
    url, version = _manifest_url(name, version_spec, base=base, timeout_s=timeout_s)
    raw = _fetch_bytes(url, what=("pack", name), timeout_s=timeout_s)
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise FetchError(url=url, message="manifest is not UTF-8") from e
    spec = parse_pack_spec(text, source=url)
    if spec.name != name:
        raise SpecError(source=url, message=f"package.name is {spec.name!r}, expected {name!r}")
    logger.info("fetched %s %s from %s", name, spec.version, url)
    return RegistryPack(spec=spec, version=version or spec.version, manifest_url=url)


def fetch_pack_spec(
    name: str,
    version_spec: str | None = None,
    *,
    base_url: str | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> PackSpec:
    return fetch_pack(name, version_spec, base_url=base_url, timeout_s=timeout_s).spec
