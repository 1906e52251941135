"""Command line interface for distbuild."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, TextIO
import os
import sys

from . import __version__
from .build import BUILD_TARGET, DIST_TARGET, BuildEngine, BuildOptions
from .config_loader import ConfigurationStore
from .console import Console
from .distribution import format_build_date
from .errors import DistbuildError
from .pipeline import task_name


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="distbuild", description="Multi-module build and distribution orchestrator")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-C",
        "--config-dir",
        dest="config_dir",
        default=os.environ.get("DISTBUILD_CONFIG_DIR", "config"),
        metavar="PATH",
        help="Configuration directory (default: ./config or $DISTBUILD_CONFIG_DIR)",
    )
    parser.add_argument("-j", "--workers", type=int, help="Number of parallel workers")
    parser.add_argument("-f", "--force", action="store_true", help="Run tasks even when they are up to date")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only print errors")
    parser.add_argument("--version-override", metavar="VERSION", help="Use VERSION instead of global.version")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Compile, classify and package modules")
    build_parser.add_argument("modules", nargs="*", metavar="MODULE", help="Modules to build (default: all)")
    build_parser.add_argument("-n", "--dry-run", action="store_true", help="Print compile commands without running them")

    subparsers.add_parser("dist", help="Build, stage, validate, archive, checksum and sign")
    subparsers.add_parser("dist-dev", help="Like dist, without signing")
    subparsers.add_parser("validate", help="Validate the existing staging tree")

    clean_parser = subparsers.add_parser("clean", help="Remove staging, work and output trees")
    clean_parser.add_argument("-n", "--dry-run", action="store_true", help="Only show what would be removed")

    checksum_parser = subparsers.add_parser("checksum", help="Write checksum sidecars for archives")
    checksum_parser.add_argument(
        "files",
        nargs="*",
        metavar="FILE",
        help="Files to checksum (default: every archive in the output directory)",
    )

    plan_parser = subparsers.add_parser("plan", help="Print the execution order of targets without running them")
    plan_parser.add_argument("targets", nargs="+", metavar="TARGET", help="Task names, e.g. dist or core:package")
    plan_parser.add_argument("--no-sign", action="store_true", help="Plan without the signing task")

    subparsers.add_parser("info", help="Show product, version and module catalog")

    return parser.parse_args(list(argv))


def _log_level(args: Namespace, store: ConfigurationStore | None) -> str:
    if args.quiet:
        return "error"
    if args.verbose:
        return "debug"
    if store is not None:
        return store.global_config.log_level
    return "info"


def _make_console(args: Namespace, store: ConfigurationStore, *, dry_run: bool = False) -> Console:
    log_file = store.path(store.global_config.log_file) if store.global_config.log_file else None
    return Console(level=_log_level(args, store), dry_run=dry_run, log_file=log_file)


def _load_store(args: Namespace) -> ConfigurationStore:
    config_dir = Path(args.config_dir).expanduser()
    if not config_dir.is_absolute():
        config_dir = Path.cwd() / config_dir
    return ConfigurationStore.from_directory(config_dir, version_override=args.version_override)


def _make_engine(args: Namespace, store: ConfigurationStore, console: Console, *, sign: bool = True) -> BuildEngine:
    options = BuildOptions(
        workers=args.workers,
        force=args.force,
        dry_run=console.dry_run,
        sign=sign,
    )
    return BuildEngine(store, console, options=options)


def _handle_build(args: Namespace, store: ConfigurationStore, console: Console) -> int:
    engine = _make_engine(args, store, console)
    engine.build(args.modules or None)
    return 0


def _handle_dist(args: Namespace, store: ConfigurationStore, console: Console, *, sign: bool) -> int:
    engine = _make_engine(args, store, console, sign=sign)
    result = engine.dist(sign=sign)
    for distribution in result.distributions:
        console.info(f"Distribution: {distribution.file}")
    for archive in result.extension_archives:
        console.info(f"Extension archive: {archive}")
    if not sign:
        console.info("Signing skipped (development distribution)")
    return 0


def _handle_validate(args: Namespace, store: ConfigurationStore, console: Console) -> int:
    engine = _make_engine(args, store, console)
    engine.validate_staging()
    console.info(f"Staging tree {engine.staging_tree.root} is valid")
    return 0


def _handle_clean(args: Namespace, store: ConfigurationStore, console: Console) -> int:
    engine = _make_engine(args, store, console)
    for path in engine.clean():
        console.info(f"Removed {path}")
    return 0


def _handle_checksum(args: Namespace, store: ConfigurationStore, console: Console) -> int:
    engine = _make_engine(args, store, console)
    files = [Path(value).expanduser().resolve() for value in args.files]
    for sidecar in engine.checksum_files(files or None):
        console.info(f"Wrote {sidecar}")
    return 0


def _handle_plan(args: Namespace, store: ConfigurationStore, console: Console, *, stdout: TextIO) -> int:
    engine = _make_engine(args, store, console)
    plan = engine.plan(args.targets, sign=not args.no_sign)
    for line in plan.describe():
        print(line, file=stdout)
    return 0


def _handle_info(args: Namespace, store: ConfigurationStore, console: Console, *, stdout: TextIO) -> int:
    engine = _make_engine(args, store, console)
    config = store.global_config
    lines: List[str] = [
        f"Product: {config.product}",
        f"Version: {config.version}",
        f"Build date: {format_build_date(store.distribution.build_timestamp)}",
        f"Root: {store.root}",
        f"Staging: {store.staging_dir}",
        f"Output: {store.output_dir}",
        f"Formats: {', '.join(store.distribution.formats)}",
        f"Targets: {BUILD_TARGET}, {DIST_TARGET}",
        "Modules:",
    ]
    for definition in engine.registry:
        upstream = ", ".join(definition.depends_on) or "-"
        downstream = engine.registry.downstream(definition.name)
        packages = sorted({rule.package for rule in engine.pipelines[definition.name].rules})
        lines.append(f"  {definition.name} (depends on: {upstream}) -> {task_name(definition.name, 'done')}")
        if packages:
            lines.append(f"    packages: {', '.join(packages)}")
        if downstream:
            lines.append(f"    used by: {', '.join(downstream)}")
    for line in lines:
        print(line, file=stdout)
    return 0


def _report_error(exc: BaseException, *, stderr: TextIO) -> None:
    message = exc.args[0] if isinstance(exc, KeyError) and exc.args else exc
    print(f"error: {message}", file=stderr)
    if isinstance(exc, DistbuildError):
        for line in exc.details():
            print(f"  {line}", file=stderr)


def main(argv: Iterable[str] | None = None, *, stdout: TextIO | None = None, stderr: TextIO | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr

    console: Console | None = None
    try:
        store = _load_store(args)
        dry_run = bool(getattr(args, "dry_run", False))
        console = _make_console(args, store, dry_run=dry_run)
        handlers: Dict[str, Callable[[], int]] = {
            "build": lambda: _handle_build(args, store, console),
            "dist": lambda: _handle_dist(args, store, console, sign=True),
            "dist-dev": lambda: _handle_dist(args, store, console, sign=False),
            "validate": lambda: _handle_validate(args, store, console),
            "clean": lambda: _handle_clean(args, store, console),
            "checksum": lambda: _handle_checksum(args, store, console),
            "plan": lambda: _handle_plan(args, store, console, stdout=stdout),
            "info": lambda: _handle_info(args, store, console, stdout=stdout),
        }
        handler = handlers.get(args.command)
        if handler is None:
            raise ValueError(f"Unknown command: {args.command}")
        return handler()
    except (DistbuildError, OSError, KeyError, ValueError) as exc:
        _report_error(exc, stderr=stderr)
        return 1
    finally:
        if console is not None:
            console.close()


__all__ = ["main"]
