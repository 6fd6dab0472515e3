from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

from .config import Settings, load_settings
from .context import ProjectContext
from .errors import (
    ApplyError,
    ConfigValidationError,
    FetchError,
    NotFoundError,
    ParseError,
    SpecError,
)
from .manifest import Manifest
from .models import Scope, resolve_pack_name, version_label
from .pack import Interactive, PackSpec, resolve_add
from .sources import PackSource, pack_detail
from .status import project_status
from .sync import ChangeSet, RegisterPack, apply, plan_add, plan_add_many, plan_sync
from .templates import TemplateChoice, materialize_template, resolve_template
from .validate import validate_pack


logger = logging.getLogger("batterypack")


def _configure_logging(verbose: int, settings: Settings) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    elif settings.log_level:
        level = getattr(logging, settings.log_level.upper())
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def _apply_root_selection(args: argparse.Namespace) -> None:
    """Thread an explicit --root through BATTERYPACK_ROOT for this invocation."""

    root: Path | None = getattr(args, "root", None)
    if root is not None:
        os.environ["BATTERYPACK_ROOT"] = str(Path(root).expanduser().resolve())


def _split_features(values: list[str] | None) -> list[str]:
    out: list[str] = []
    for v in values or []:
        for part in v.replace(",", " ").split():
            if part not in out:
                out.append(part)
    return out


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="batterypack",
        description="Curated dependency bundles for Cargo projects",
    )
    p.add_argument("--root", type=Path, default=None, help="Project directory (default: nearest Cargo.toml)")
    p.add_argument("--config", type=Path, default=None, help="Settings file (default: ~/.batterypack/config.toml)")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")

    # cmd is NOT required - no args starts the interactive session
    sub = p.add_subparsers(dest="cmd", required=False)

    add = sub.add_parser("add", help="Add a battery pack (or some of its crates) to the project")
    add.add_argument("pack", help="Pack name; the -battery-pack suffix is optional")
    add.add_argument("crates", nargs="*", help="Only add these crates")
    add.add_argument("-F", "--features", action="append", default=None, help="Feature groups to enable")
    add.add_argument("--no-default-features", action="store_true")
    add.add_argument("--all-features", action="store_true")
    add.add_argument("--target", choices=["default", "package", "workspace"], default="default")
    add.add_argument("--path", type=Path, default=None, help="Use the pack at this local path")
    add.add_argument("--dry-run", action="store_true")

    s = sub.add_parser("sync", help="Bring pack crates up to their recommended versions and features")
    s.add_argument("--dry-run", action="store_true")

    en = sub.add_parser("enable", help="Enable a feature group of an installed pack")
    en.add_argument("feature")
    en.add_argument("--pack", default=None)
    en.add_argument("--dry-run", action="store_true")

    ls = sub.add_parser("list", help="List available battery packs")
    ls.add_argument("filter", nargs="?", default=None)

    show = sub.add_parser("show", help="Show a battery pack")
    show.add_argument("pack")
    show.add_argument("--path", type=Path, default=None)

    new = sub.add_parser("new", help="Create a project from a pack template")
    new.add_argument("pack")
    new.add_argument("--name", default=None)
    new.add_argument("--template", default=None)
    new.add_argument("--dir", dest="directory", type=Path, default=Path("."))
    new.add_argument("--path", type=Path, default=None)

    sub.add_parser("status", help="Show packs whose crates are behind their recommendations")

    v = sub.add_parser("validate", help="Check a battery pack for problems")
    v.add_argument("path", nargs="?", type=Path, default=None)
    return p


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    _apply_root_selection(args)

    try:
        settings = load_settings(args.config)
        _configure_logging(args.verbose, settings)
        return _run(args, settings)
    except (ParseError, ConfigValidationError, SpecError) as e:
        print(f"error: {e}")
        return 2
    except NotFoundError as e:
        print(f"error: {e}")
        return 3
    except FetchError as e:
        print(f"error: {e}")
        return 4
    except ApplyError as e:
        print(f"error: {e}")
        return 5
    except PermissionError as e:
        print(f"error: {e}")
        return 6
    except Exception as e:  # pragma: no cover
        print(f"error: {e}")
        return 1


def _source(settings: Settings, extra_path: Path | None = None) -> PackSource:
    if extra_path is not None:
        settings = replace(settings, local_paths=(extra_path.expanduser().resolve(),) + settings.local_paths)
    return PackSource(settings=settings)


def _commit(ctx: ProjectContext, model: Manifest, change_set: ChangeSet, *, dry_run: bool) -> int:
    lines = change_set.describe()
    if change_set.is_empty():
        print("Nothing to do.")
        return 0
    if dry_run:
        for line in lines:
            print(f"would {line}")
        return 0
    updated = apply(change_set, model)
    for path in ctx.save(updated):
        print(f"updated {path}")
    for line in lines:
        print(f"  {line}")
    return 0


def _cmd_add(args: argparse.Namespace, settings: Settings) -> int:
    ctx = ProjectContext.discover()
    model = ctx.load()
    scope = Scope.WORKSPACE if args.target == "workspace" else Scope.PACKAGE
    if model.is_virtual and scope is Scope.PACKAGE:
        print("error: this is a virtual workspace manifest; run inside a member or use --target workspace")
        return 2

    name = resolve_pack_name(args.pack)
    source = _source(settings, args.path)
    spec = source.load(name).spec

    sel = resolve_add(
        spec,
        features=_split_features(args.features),
        no_default=args.no_default_features,
        all_features=args.all_features,
        crates=args.crates,
    )
    if isinstance(sel, Interactive):
        if sys.stdin.isatty() and not args.dry_run:
            from .tui.runner import run_interactive
            from .tui.screens import AddTarget

            return run_interactive(ctx, source, start=AddTarget(focus=name))
        sel = resolve_add(spec, features=["default"])
        assert not isinstance(sel, Interactive)

    for missing in sel.missing:
        print(f"error: {missing}")
    if sel.missing and not sel.crates:
        return 3

    use_workspace = args.target == "workspace" or (args.target == "default" and ctx.in_workspace)
    existing = model.get_registration(spec.name)
    features = tuple(sel.active_features)
    if existing is not None:
        features = tuple(sorted(set(existing.features) | set(features)))

    change_set = plan_add_many([(spec.name, sel.crates)], model)
    change_set = ChangeSet(changes=change_set.changes, use_workspace=use_workspace).with_registration(
        RegisterPack(pack=spec.name, version=spec.version, features=features, scope=scope)
    )
    return _commit(ctx, model, change_set, dry_run=args.dry_run)


def _load_specs(source: PackSource, names: list[str]) -> dict[str, PackSpec]:
    specs: dict[str, PackSpec] = {}
    for n in names:
        try:
            specs[n] = source.load(n).spec
        except (SpecError, NotFoundError, FetchError) as e:
            print(f"warning: skipping {n}: {e}")
    return specs


def _cmd_sync(args: argparse.Namespace, settings: Settings) -> int:
    ctx = ProjectContext.discover()
    model = ctx.load()
    for problem in model.registration_problems():
        print(f"warning: ignoring registration {problem}")
    regs = model.tracked_packs()
    if not regs:
        print("No battery packs registered.")
        return 0
    specs = _load_specs(_source(settings), [r.name for r in regs])
    change_set = plan_sync(regs, specs, model)
    change_set = replace(change_set, use_workspace=ctx.in_workspace)
    return _commit(ctx, model, change_set, dry_run=args.dry_run)


def _cmd_enable(args: argparse.Namespace, settings: Settings) -> int:
    ctx = ProjectContext.discover()
    model = ctx.load()
    regs = model.registrations()
    if args.pack:
        wanted = resolve_pack_name(args.pack)
        regs = [r for r in regs if r.name == wanted]
        if not regs:
            raise NotFoundError(kind="installed pack", name=wanted)

    specs = _load_specs(_source(settings), [r.name for r in regs])
    matches = [r for r in regs if r.name in specs and args.feature in specs[r.name].feature_groups]
    if not matches:
        raise NotFoundError(kind="feature", name=args.feature, hint="No installed pack declares it.")
    if len(matches) > 1:
        names = ", ".join(r.name for r in matches)
        print(f"error: feature '{args.feature}' exists in several packs ({names}); choose one with --pack")
        return 2

    reg = matches[0]
    spec = specs[reg.name]
    features = tuple(sorted(set(reg.features) | {args.feature}))
    change_set = plan_add(spec, features, model)
    change_set = ChangeSet(changes=change_set.changes, use_workspace=ctx.in_workspace).with_registration(
        RegisterPack(pack=reg.name, version=reg.version, features=features, scope=reg.scope, build_dependency=False)
    )
    return _commit(ctx, model, change_set, dry_run=args.dry_run)


def _cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    packs = _source(settings).list_packs(args.filter)
    if not packs:
        print("No battery packs found.")
        return 0
    width = max(len(p.short_name) for p in packs)
    for p in packs:
        where = f"  [{p.local_path}]" if p.local_path else ""
        print(f"{p.short_name:<{width}}  {p.version:<8}  {p.description}{where}".rstrip())
    return 0


def _cmd_show(args: argparse.Namespace, settings: Settings) -> int:
    name = resolve_pack_name(args.pack)
    loaded = _source(settings, args.path).load(name)
    d = pack_detail(loaded)
    spec = loaded.spec
    print(f"{d.name} {d.version}")
    if d.description:
        print(d.description)
    if d.repository:
        print(d.repository)
    print("")
    print("Crates:")
    for decl in spec.visible_dependencies():
        groups = spec.groups_containing(decl.name)
        suffix = f"  [{', '.join(groups)}]" if groups else ""
        print(f"  {decl.name} {version_label(decl.version, decl.features, decl.kind)}{suffix}")
    if d.extends:
        print("Extends:")
        for e in d.extends:
            print(f"  {e}")
    if spec.feature_groups:
        print("Features:")
        for g in spec.group_names():
            print(f"  {g}: {', '.join(spec.group_dependencies(g)) or '-'}")
    if d.templates:
        print("Templates:")
        for tname, t in d.templates:
            print(f"  {tname}" + (f" - {t.description}" if t.description else ""))
    if d.examples:
        print("Examples:")
        for ex in d.examples:
            print(f"  {ex.name}" + (f" - {ex.description}" if ex.description else ""))
    return 0


def _cmd_new(args: argparse.Namespace, settings: Settings) -> int:
    name = resolve_pack_name(args.pack)
    loaded = _source(settings, args.path).load(name)
    if loaded.root is None:
        print(f"error: {name} has no local copy to generate from")
        return 4
    chosen = resolve_template(loaded.spec.templates, args.template)
    if isinstance(chosen, TemplateChoice):
        print(f"error: {name} has several templates; choose one with --template: {', '.join(chosen.options)}")
        return 2
    project = args.name
    if not project and sys.stdin.isatty():
        try:
            project = input("Project name: ").strip()
        except EOFError:
            project = ""
    if not project:
        print("error: --name is required")
        return 2
    _, tmpl = chosen
    dest = materialize_template(loaded.root, tmpl.path, (args.directory / project).resolve(), project)
    print(f"created {dest}")
    return 0


def _cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    ctx = ProjectContext.discover()
    model = ctx.load()
    installed = model.installed_packs()
    if not installed:
        print("No battery packs installed.")
        return 0
    specs = _load_specs(_source(settings), installed)
    for st in project_status(model, specs):
        header = f"{st.name} {st.registered_version or '?'}"
        if st.available_version is None:
            print(f"{header}: pack not available")
            continue
        if st.pack_outdated:
            header += f" (latest {st.available_version})"
        if st.up_to_date:
            print(f"{header}: up to date")
            continue
        print(f"{header}:")
        for d in st.drift:
            print(f"  {d.describe()}")
    return 0


def _cmd_validate(args: argparse.Namespace, settings: Settings) -> int:
    report = validate_pack(args.path or Path.cwd())
    for d in report.diagnostics:
        print(str(d))
    print(report.summary())
    return 0 if report.ok else 1


def _run(args: argparse.Namespace, settings: Settings) -> int:
    if args.cmd is None:
        if not sys.stdin.isatty():
            print("error: the interactive session needs a terminal; see --help for commands")
            return 2
        from .tui.runner import run_interactive

        return run_interactive(ProjectContext.discover(), _source(settings))

    handlers = {
        "add": _cmd_add,
        "sync": _cmd_sync,
        "enable": _cmd_enable,
        "list": _cmd_list,
        "show": _cmd_show,
        "new": _cmd_new,
        "status": _cmd_status,
        "validate": _cmd_validate,
    }
    return handlers[args.cmd](args, settings)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
