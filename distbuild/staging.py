"""Assemble packages, module libraries and resource trees into the staging tree."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple
import shutil

from core.archive import iter_tree

from .classifier import match_any
from .config_loader import (
    DEFAULT_DUPLICATE_POLICIES,
    DEFAULT_ROLE_DIRECTORIES,
    DEFAULT_STAMP_SUFFIXES,
    DEFAULT_VERSION_TOKEN,
    DUPLICATE_POLICIES,
    ROLE_ORDER,
    DuplicateRule,
    StagingSettings,
)
from .console import Console
from .errors import AssemblyError, ConfigurationError, DuplicateEntryError
from .packaging import ArtifactPackage, write_if_changed
from .pipeline import LibrarySet
from .stamping import is_stampable, stamp_bytes

# Role used for files at the top of the tree and for unknown directories.
DEFAULT_ROLE = "library"


@dataclass(frozen=True, slots=True)
class StagingTree:
    root: Path
    roles: Mapping[str, Tuple[str, ...]]

    @classmethod
    def create(cls, root: Path, roles: Mapping[str, Sequence[str]] | None = None) -> "StagingTree":
        merged: Dict[str, Tuple[str, ...]] = {
            role: tuple(directories) for role, directories in DEFAULT_ROLE_DIRECTORIES.items()
        }
        for role, directories in (roles or {}).items():
            if role not in ROLE_ORDER:
                raise ConfigurationError(f"Unknown staging role '{role}'")
            merged[role] = tuple(directories)
        return cls(root=root, roles=merged)

    def directories(self) -> List[str]:
        ordered: List[str] = []
        for role in ROLE_ORDER:
            for directory in self.roles.get(role, ()):
                if directory not in ordered:
                    ordered.append(directory)
        return ordered

    def role_dirs(self, role: str) -> List[Path]:
        return [self.root / directory for directory in self.roles.get(role, ())]

    def role_for(self, relative: str) -> str:
        parts = PurePosixPath(relative).parts
        if len(parts) > 1:
            for role in ROLE_ORDER:
                for directory in self.roles.get(role, ()):
                    directory_parts = PurePosixPath(directory).parts
                    if tuple(parts[: len(directory_parts)]) == directory_parts:
                        return role
        return DEFAULT_ROLE

    def ensure_layout(self) -> None:
        for directory in self.directories():
            path = self.root / directory
            if path.exists() and not path.is_dir():
                raise AssemblyError(directory, "expected a directory but found a file")
            path.mkdir(parents=True, exist_ok=True)


@dataclass(slots=True)
class DuplicatePolicy:
    """Per-role default policy plus glob overrides; the first matching override wins."""

    defaults: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_DUPLICATE_POLICIES))
    overrides: List[DuplicateRule] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: StagingSettings) -> "DuplicatePolicy":
        return cls(defaults=dict(settings.duplicates), overrides=list(settings.duplicate_rules))

    def policy_for(self, relative: str, role: str) -> str:
        for rule in self.overrides:
            if match_any([rule.pattern], relative):
                return rule.policy
        policy = self.defaults.get(role, "overwrite")
        if policy not in DUPLICATE_POLICIES:
            raise ConfigurationError(f"Unknown duplicate policy '{policy}' for role '{role}'")
        return policy


@dataclass(frozen=True, slots=True)
class ResourceInput:
    source: Path
    destination: str = "."
    include: Tuple[str, ...] = ("**",)
    exclude: Tuple[str, ...] = ()
    origin: str = ""


@dataclass(frozen=True, slots=True)
class StampOptions:
    version: str
    token: str = DEFAULT_VERSION_TOKEN
    suffixes: Tuple[str, ...] = tuple(DEFAULT_STAMP_SUFFIXES)
    paths: Tuple[str, ...] = ("**",)


@dataclass(slots=True)
class AssemblyReport:
    written: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    stamped: List[str] = field(default_factory=list)

    @property
    def files(self) -> int:
        return len(self.written) + len(self.unchanged)


@dataclass(frozen=True, slots=True)
class _Copy:
    relative: str
    source: Path
    origin: str


def _join(destination: str, relative: str) -> str:
    destination = destination.strip("/")
    if destination in ("", "."):
        return relative
    return f"{destination}/{relative}"


def _checked(relative: str) -> str:
    path = PurePosixPath(relative)
    if path.is_absolute() or ".." in path.parts or not path.parts:
        raise AssemblyError(relative, "destination must be a relative path inside the staging tree")
    return path.as_posix()


class StagingAssembler:
    """Merges every input into one role-organised staging directory.

    Inputs are copied in role order (library, configuration, extension, web,
    documentation). Files overwrite, directories merge. When two inputs in the
    same run target one path the duplicate policy of that path decides.
    """

    def __init__(
        self,
        console: Console,
        *,
        duplicates: DuplicatePolicy | None = None,
        stamping: StampOptions | None = None,
    ):
        self.console = console
        self.duplicates = duplicates or DuplicatePolicy()
        self.stamping = stamping

    def plan_copies(
        self,
        packages: Iterable[ArtifactPackage],
        resource_trees: Iterable[ResourceInput],
        library_sets: Iterable[LibrarySet],
    ) -> List[_Copy]:
        copies: List[_Copy] = []
        for package in packages:
            if package.packaged_file is None:
                raise AssemblyError(package.destination, f"package '{package.name}' has not been written")
            origin = f"package {package.module}:{package.name}" if package.module else f"package {package.name}"
            copies.append(_Copy(_checked(package.destination), package.packaged_file, origin))

        for library_set in library_sets:
            if not library_set.directory.is_dir():
                continue
            for path in sorted(library_set.directory.iterdir()):
                if path.is_file():
                    relative = _checked(_join(library_set.destination, path.name))
                    copies.append(_Copy(relative, path, f"libraries of {library_set.module}"))

        for resource in resource_trees:
            origin = resource.origin or f"resources {resource.source}"
            if resource.source.is_file():
                copies.append(_Copy(_checked(_join(resource.destination, resource.source.name)), resource.source, origin))
                continue
            if not resource.source.is_dir():
                raise AssemblyError(str(resource.source), "resource source does not exist")
            for path, relative, is_dir in iter_tree(resource.source):
                if is_dir or not match_any(resource.include, relative):
                    continue
                if match_any(resource.exclude, relative) or match_any(resource.exclude, path.name):
                    continue
                copies.append(_Copy(_checked(_join(resource.destination, relative)), path, origin))
        return copies

    def assemble(
        self,
        tree: StagingTree,
        packages: Iterable[ArtifactPackage],
        resource_trees: Iterable[ResourceInput],
        library_sets: Iterable[LibrarySet],
    ) -> AssemblyReport:
        tree.root.mkdir(parents=True, exist_ok=True)
        tree.ensure_layout()

        copies = self.plan_copies(packages, resource_trees, library_sets)
        role_rank = {role: index for index, role in enumerate(ROLE_ORDER)}
        copies.sort(key=lambda copy: role_rank[tree.role_for(copy.relative)])

        report = AssemblyReport()
        staged: Dict[str, _Copy] = {}
        for copy in copies:
            previous = staged.get(copy.relative)
            if previous is not None and previous.source.resolve() != copy.source.resolve():
                policy = self.duplicates.policy_for(copy.relative, tree.role_for(copy.relative))
                if policy == "fail":
                    raise DuplicateEntryError(copy.relative, previous.origin, copy.origin)
                if policy == "skip":
                    self.console.debug(f"Skipping duplicate {copy.relative} from {copy.origin}")
                    report.skipped.append(copy.relative)
                    continue
                if policy == "warn":
                    self.console.warn(f"{copy.relative}: {copy.origin} replaces {previous.origin}")
            staged[copy.relative] = copy

        for relative, copy in staged.items():
            self._write(tree, copy, report)

        self.console.info(
            f"Staged {report.files} file(s) in {tree.root} ({len(report.written)} updated, "
            f"{len(report.skipped)} duplicate(s) skipped)"
        )
        return report

    def _write(self, tree: StagingTree, copy: _Copy, report: AssemblyReport) -> None:
        target = tree.root / copy.relative
        if target.is_dir():
            raise AssemblyError(copy.relative, "a directory is in the way")
        try:
            data = copy.source.read_bytes()
            if self.stamping is not None and is_stampable(copy.relative, self.stamping.suffixes, self.stamping.paths):
                stamped = stamp_bytes(data, self.stamping.version, self.stamping.token)
                if stamped != data:
                    report.stamped.append(copy.relative)
                    data = stamped
            is_new = not target.exists()
            if write_if_changed(target, data):
                if is_new:
                    shutil.copymode(copy.source, target)
                report.written.append(copy.relative)
            else:
                report.unchanged.append(copy.relative)
        except OSError as exc:
            raise AssemblyError(copy.relative, f"{exc.strerror or exc} (from {copy.source})") from exc


def summarize(tree: StagingTree) -> List[str]:
    """One line per top-level entry with its file count."""

    lines: List[str] = []
    if not tree.root.is_dir():
        return lines
    for entry in sorted(tree.root.iterdir()):
        if entry.is_dir():
            count = sum(1 for _, _, is_dir in iter_tree(entry) if not is_dir)
            lines.append(f"{entry.name}/ ({count} files)")
        else:
            lines.append(entry.name)
    return lines


__all__ = [
    "AssemblyReport",
    "DEFAULT_ROLE",
    "DuplicatePolicy",
    "ResourceInput",
    "StagingAssembler",
    "StagingTree",
    "StampOptions",
    "summarize",
]
