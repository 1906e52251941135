"""Validate the staging tree and write end-user distribution archives."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from core.archive import FORMAT_SUFFIXES, ArchiveArtifact, ArchiveManager, ModeResolver, iter_tree, resolve_archive_format

from .classifier import match_any
from .console import Console
from .errors import ConfigurationError, ValidationError
from .packaging import write_if_changed
from .staging import StagingTree
from .stamping import checksum, sidecar_path, signature_path

DEFAULT_LAUNCHER_PATTERNS = ("**/*.sh", "**/*launcher*.jar")


def validate(tree: StagingTree, required_files: Iterable[str], required_dirs: Iterable[str]) -> List[str]:
    """Every required entry missing from *tree*, files first, in declaration order."""

    missing: List[str] = []
    for relative in required_files:
        if not (tree.root / relative).is_file():
            missing.append(relative)
    for relative in required_dirs:
        if not (tree.root / relative).is_dir():
            missing.append(relative.rstrip("/") + "/")
    return missing


def ensure_valid(tree: StagingTree, required_files: Iterable[str], required_dirs: Iterable[str]) -> None:
    missing = validate(tree, required_files, required_dirs)
    if missing:
        raise ValidationError(missing)


def launcher_modes(patterns: Sequence[str]) -> ModeResolver:
    """Directories and launcher files get 0755, everything else 0644."""

    def _mode(relative: str, is_dir: bool) -> int:
        if is_dir or (relative and match_any(patterns, relative)):
            return 0o755
        return 0o644

    return _mode


@dataclass(frozen=True, slots=True)
class Distribution:
    format: str
    file: Path
    staging_root: Path
    prefix: str
    version: str
    build_timestamp: int
    launcher_patterns: Tuple[str, ...] = DEFAULT_LAUNCHER_PATTERNS
    entries: Tuple[str, ...] = ()

    def checksum_file(self, algorithm: str = "sha256") -> Path:
        return sidecar_path(self.file, algorithm)

    @property
    def signature_file(self) -> Path:
        return signature_path(self.file)


def format_build_date(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class DistributionPackager:
    def __init__(
        self,
        console: Console,
        *,
        product: str,
        version: str,
        output_dir: Path,
        build_timestamp: int,
        launcher_patterns: Sequence[str] = DEFAULT_LAUNCHER_PATTERNS,
        required_files: Sequence[str] = (),
        required_dirs: Sequence[str] = (),
        archive_manager: ArchiveManager | None = None,
    ):
        self.console = console
        self.product = product
        self.version = version
        self.output_dir = output_dir
        self.build_timestamp = build_timestamp
        self.launcher_patterns = tuple(launcher_patterns)
        self.required_files = list(required_files)
        self.required_dirs = list(required_dirs)
        self.archive_manager = archive_manager or ArchiveManager(console)

    @property
    def prefix(self) -> str:
        return f"{self.product}-{self.version}"

    def archive_path(self, archive_format: str) -> Path:
        canonical = resolve_archive_format(Path("archive"), archive_format)
        return self.output_dir / f"{self.prefix}{FORMAT_SUFFIXES[canonical]}"

    def validate(self, tree: StagingTree) -> List[str]:
        return validate(tree, self.required_files, self.required_dirs)

    def package(self, tree: StagingTree, archive_format: str) -> Distribution:
        """Validate *tree*, then write one archive rooted at ``<product>-<version>/``."""

        ensure_valid(tree, self.required_files, self.required_dirs)
        try:
            canonical = resolve_archive_format(Path("archive"), archive_format)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        target = self.archive_path(canonical)
        self.archive_manager.create_archive(
            artifact=ArchiveArtifact(
                source_dir=tree.root,
                prefix=self.prefix,
                label=f"{self.prefix} ({canonical})",
                mode_for=launcher_modes(self.launcher_patterns),
                mtime=self.build_timestamp,
            ),
            target_path=target,
            format_hint=canonical,
        )
        entries = tuple(relative for _, relative, _ in iter_tree(tree.root))
        return Distribution(
            format=canonical,
            file=target,
            staging_root=tree.root,
            prefix=self.prefix,
            version=self.version,
            build_timestamp=self.build_timestamp,
            launcher_patterns=self.launcher_patterns,
            entries=entries,
        )

    def package_all(self, tree: StagingTree, formats: Iterable[str]) -> List[Distribution]:
        ensure_valid(tree, self.required_files, self.required_dirs)
        return [self.package(tree, archive_format) for archive_format in formats]

    def package_extensions(
        self,
        tree: StagingTree,
        output_dir: Path | None = None,
        *,
        algorithm: str | None = "sha256",
    ) -> List[Path]:
        """One ``<name>-<version>.zip`` per ``extensions/<name>/`` directory.

        Each zip holds the extension directory under its own name. When
        *algorithm* is set a checksum sidecar is written next to each zip.
        """

        destination = output_dir or self.output_dir / "extensions"
        written: List[Path] = []
        for extension_root in tree.role_dirs("extension"):
            if not extension_root.is_dir():
                continue
            for extension in sorted(path for path in extension_root.iterdir() if path.is_dir()):
                target = destination / f"{extension.name}-{self.version}.zip"
                self.archive_manager.create_archive(
                    artifact=ArchiveArtifact(
                        source_dir=extension,
                        prefix=extension.name,
                        label=f"extension {extension.name}",
                        mode_for=launcher_modes(self.launcher_patterns),
                        mtime=self.build_timestamp,
                    ),
                    target_path=target,
                    format_hint="zip",
                )
                if algorithm and not self.console.dry_run:
                    checksum(target, algorithm)
                written.append(target)
        return written

    def build_info(self, directories: Iterable[str] = ()) -> str:
        lines = [
            f"{self.product} {self.version}",
            f"Build Date: {format_build_date(self.build_timestamp)}",
        ]
        listed = [directory for directory in directories if directory]
        if listed:
            lines.append("")
            lines.append("This distribution contains:")
            lines.extend(f"- {directory}/" for directory in listed)
        return "\n".join(lines) + "\n"

    def write_build_info(self, target: Path, directories: Iterable[str] = ()) -> Path:
        write_if_changed(target, self.build_info(directories).encode("utf-8"))
        return target


def find_archives(directory: Path) -> List[Path]:
    """Archives directly inside *directory*, sorted by name."""

    if not directory.is_dir():
        return []
    suffixes = tuple(FORMAT_SUFFIXES.values())
    return sorted(path for path in directory.iterdir() if path.is_file() and path.name.endswith(suffixes))


__all__ = [
    "DEFAULT_LAUNCHER_PATTERNS",
    "Distribution",
    "DistributionPackager",
    "ensure_valid",
    "find_archives",
    "format_build_date",
    "launcher_modes",
    "validate",
]
