"""Per-module task chain: compile, classify, package, copy libraries."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Tuple
import json
import shutil

from core.command_runner import CommandError, CommandRunner
from core.crypto import digest_file

from .classifier import ClassificationResult, ClassificationRule, classify, expand_rules, match_any
from .config_loader import ModuleDefinition, PackageSpec
from .console import Console
from .errors import CompileError, ConfigurationError, DependencyConflictError, DistbuildError
from .graph import Task, TaskState
from .packaging import ZIP_EPOCH, ArtifactPackage, packages_for, write_if_changed, write_package
from .registry import ModuleRegistry

TASK_STEPS = ("compile", "classify", "package", "libraries", "done")


def task_name(module: str, step: str) -> str:
    return f"{module}:{step}"


def split_task_name(name: str) -> Tuple[str, str]:
    module, _, step = name.rpartition(":")
    return module, step


class ModuleState(str, Enum):
    UNBUILT = "unbuilt"
    COMPILING = "compiling"
    CLASSIFIED = "classified"
    PACKAGED = "packaged"
    DEPENDENCIES_COPIED = "dependencies-copied"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: Dict[ModuleState, frozenset[ModuleState]] = {
    ModuleState.UNBUILT: frozenset({ModuleState.COMPILING, ModuleState.FAILED}),
    ModuleState.COMPILING: frozenset({ModuleState.CLASSIFIED, ModuleState.FAILED}),
    ModuleState.CLASSIFIED: frozenset({ModuleState.PACKAGED, ModuleState.FAILED}),
    ModuleState.PACKAGED: frozenset({ModuleState.DEPENDENCIES_COPIED, ModuleState.FAILED}),
    ModuleState.DEPENDENCIES_COPIED: frozenset({ModuleState.DONE, ModuleState.FAILED}),
    ModuleState.DONE: frozenset(),
    ModuleState.FAILED: frozenset(),
}

# Module state reached when each step finishes successfully.
_STEP_RESULTS: Dict[str, ModuleState] = {
    "classify": ModuleState.CLASSIFIED,
    "package": ModuleState.PACKAGED,
    "libraries": ModuleState.DEPENDENCIES_COPIED,
    "done": ModuleState.DONE,
}


class ModuleStateTracker:
    """Task listener that drives one state machine per module."""

    def __init__(self, modules: Iterable[str]):
        self.states: Dict[str, ModuleState] = {name: ModuleState.UNBUILT for name in modules}
        self.history: Dict[str, List[ModuleState]] = {name: [ModuleState.UNBUILT] for name in self.states}

    def state(self, module: str) -> ModuleState:
        return self.states[module]

    def _advance(self, module: str, target: ModuleState) -> None:
        current = self.states[module]
        if current is target:
            return
        if target not in _TRANSITIONS[current]:
            raise RuntimeError(f"Module '{module}' cannot move from {current.value} to {target.value}")
        self.states[module] = target
        self.history[module].append(target)

    def task_started(self, task: Task) -> None:
        module, step = split_task_name(task.name)
        if module in self.states and step == "compile":
            self._advance(module, ModuleState.COMPILING)

    def task_finished(self, task: Task, state: TaskState, error: DistbuildError | None) -> None:
        module, step = split_task_name(task.name)
        if module not in self.states or step not in TASK_STEPS:
            return
        if state is TaskState.FAILED:
            self._advance(module, ModuleState.FAILED)
        elif state.completed and step in _STEP_RESULTS:
            self._advance(module, _STEP_RESULTS[step])


@dataclass(slots=True)
class PipelineSettings:
    root: Path
    build_dir: Path
    version: str
    strict_libraries: bool = False
    package_mtime: int = ZIP_EPOCH


@dataclass(frozen=True, slots=True)
class LibrarySet:
    """Resolved runtime libraries of one module, staged under ``destination``."""

    module: str
    destination: str
    directory: Path


def _literal_base(pattern: str) -> str:
    literal: List[str] = []
    for part in pattern.split("/")[:-1]:
        if any(char in part for char in "*?["):
            break
        literal.append(part)
    return "/".join(literal)


def find_files(base: Path, include: Iterable[str], exclude: Iterable[str] = ()) -> List[Tuple[str, Path]]:
    """Files below *base* matching *include* and not *exclude*, in include order."""

    exclude = list(exclude)
    found: List[Tuple[str, Path]] = []
    seen: set[str] = set()
    for pattern in include:
        prefix = _literal_base(pattern)
        start = base / prefix if prefix else base
        if not start.is_dir():
            continue
        matches: List[Tuple[str, Path]] = []
        for path in start.rglob("*"):
            if not path.is_file():
                continue
            relative = path.relative_to(base).as_posix()
            if relative in seen or not match_any([pattern], relative):
                continue
            if match_any(exclude, relative) or match_any(exclude, path.name):
                continue
            matches.append((relative, path))
        for relative, path in sorted(matches):
            seen.add(relative)
            found.append((relative, path))
    return found


class ModulePipeline:
    """Builds the tasks for one module and implements their actions."""

    def __init__(
        self,
        module: ModuleDefinition,
        registry: ModuleRegistry,
        settings: PipelineSettings,
        *,
        runner: CommandRunner,
        console: Console,
    ):
        self.module = module
        self.registry = registry
        self.settings = settings
        self.runner = runner
        self.console = console
        self._rules: List[ClassificationRule] | None = None

    @property
    def name(self) -> str:
        return self.module.name

    def _path(self, value: str) -> Path:
        candidate = Path(value)
        return candidate if candidate.is_absolute() else self.settings.root / candidate

    @property
    def source_dir(self) -> Path:
        return self._path(self.module.source_dir)

    @property
    def unit_dir(self) -> Path:
        return self._path(self.module.unit_dir)

    @property
    def work_dir(self) -> Path:
        return self.settings.build_dir / "modules" / self.name

    @property
    def classification_file(self) -> Path:
        return self.work_dir / "classification.json"

    @property
    def packages_dir(self) -> Path:
        return self.work_dir / "packages"

    @property
    def packages_index(self) -> Path:
        return self.work_dir / "packages.json"

    @property
    def libraries_dir(self) -> Path:
        return self.work_dir / "lib"

    @property
    def rules(self) -> List[ClassificationRule]:
        if self._rules is None:
            self._rules = expand_rules(self.name, self.module.rules, self.module.template_context)
        return self._rules

    def package_specs(self) -> Dict[str, PackageSpec]:
        """Explicit ``[packages.*]`` tables, completed by metadata carried on rules."""

        specs: Dict[str, PackageSpec] = dict(self.module.packages)
        for rule in self.rules:
            if rule.package in specs:
                continue
            if rule.destination or rule.main_class or rule.class_path:
                specs[rule.package] = PackageSpec(
                    name=rule.package,
                    destination=rule.destination or f"{self.module.package_dir}/{rule.package}.jar",
                    main_class=rule.main_class,
                    class_path=list(rule.class_path),
                )
        return specs

    def destination_for(self, package: str) -> str:
        spec = self.package_specs().get(package)
        return spec.destination if spec else f"{self.module.package_dir}/{package}.jar"

    def library_set(self) -> LibrarySet:
        destination = self.module.libraries.destination or self.module.package_dir
        return LibrarySet(module=self.name, destination=destination, directory=self.libraries_dir)

    def check_configuration(self) -> None:
        """Validate rule tables and, when the compiled unit exists, classification conflicts."""

        rules = self.rules
        destinations: Dict[str, str] = {}
        for package in sorted({rule.package for rule in rules}):
            destination = self.destination_for(package)
            if destination in destinations:
                raise ConfigurationError(
                    f"Module '{self.name}': packages '{destinations[destination]}' and '{package}' "
                    f"share destination '{destination}'"
                )
            destinations[destination] = package
        if rules and self.unit_dir.is_dir():
            classify(self.unit_dir, rules, module=self.name).ensure_no_conflicts()

    def _signature(self, *parts: object) -> str:
        return json.dumps([self.settings.version, *parts], sort_keys=True, default=str)

    def tasks(self) -> List[Task]:
        module = self.module
        command = module.compile.command
        upstream_done = tuple(task_name(name, "done") for name in module.depends_on)
        library_inputs = self._library_roots()
        rule_table = [
            [rule.package, rule.include, rule.exclude, rule.priority, rule.allow_overlap] for rule in self.rules
        ]
        specs = {name: [spec.destination, spec.main_class, spec.class_path, spec.attributes, spec.sources]
                 for name, spec in sorted(self.package_specs().items())}
        package_inputs = [self.classification_file, self.unit_dir]
        for spec in self.package_specs().values():
            package_inputs.extend(self._path(source) for source in spec.sources)

        return [
            Task(
                name=task_name(self.name, "compile"),
                action=self.compile,
                depends_on=upstream_done,
                inputs=(self.source_dir,) if command else (),
                outputs=(self.unit_dir,) if command else (),
                description=f"compile {self.name}",
                signature=self._signature(command, module.compile.cwd, module.compile.environment),
            ),
            Task(
                name=task_name(self.name, "classify"),
                action=self.classify,
                depends_on=(task_name(self.name, "compile"),),
                inputs=(self.unit_dir,),
                outputs=(self.classification_file,),
                description=f"classify {self.name} into {len({rule.package for rule in self.rules})} package(s)",
                signature=self._signature(rule_table),
            ),
            Task(
                name=task_name(self.name, "package"),
                action=self.package,
                depends_on=(task_name(self.name, "classify"),),
                inputs=tuple(package_inputs),
                outputs=(self.packages_dir, self.packages_index),
                description=f"package {self.name}",
                signature=self._signature(specs, self.settings.package_mtime),
            ),
            Task(
                name=task_name(self.name, "libraries"),
                action=self.copy_libraries,
                depends_on=(task_name(self.name, "package"),),
                inputs=tuple(library_inputs),
                outputs=(self.libraries_dir,),
                description=f"collect runtime libraries for {self.name}",
                signature=self._signature(self._library_table(), self.settings.strict_libraries),
            ),
            Task(
                name=task_name(self.name, "done"),
                depends_on=(task_name(self.name, "libraries"),),
                description=f"{self.name} complete",
            ),
        ]

    def compile(self) -> None:
        settings = self.module.compile
        if not settings.command:
            if not self.unit_dir.is_dir():
                raise CompileError(
                    f"Module '{self.name}' has no compile command and its compiled unit '{self.unit_dir}' is missing"
                )
            self.console.debug(f"{self.name}: using pre-built unit {self.unit_dir}")
            return
        cwd = self._path(settings.cwd) if settings.cwd else self.source_dir
        try:
            self.runner.run(settings.command, cwd=cwd, env=settings.environment, note=f"compile {self.name}")
        except (CommandError, OSError) as exc:
            raise CompileError(f"Compiling module '{self.name}' failed: {exc}") from exc
        if self.console.dry_run:
            return
        if not self.unit_dir.is_dir():
            raise CompileError(f"Compiling module '{self.name}' did not produce '{self.unit_dir}'")

    def classify(self) -> ClassificationResult | None:
        if self.console.dry_run:
            self.console.dry(f"Would classify {self.unit_dir} with {len(self.rules)} rule(s)")
            return None
        result = classify(self.unit_dir, self.rules, module=self.name)
        if result.unclassified:
            self.console.warn(f"{self.name}: {len(result.unclassified)} path(s) not classified into any package")
            for path in result.unclassified:
                self.console.debug(f"{self.name}: unclassified {path}")
        result.ensure_no_conflicts()
        payload = json.dumps(result.to_mapping(), indent=2, sort_keys=True) + "\n"
        write_if_changed(self.classification_file, payload.encode("utf-8"))
        return result

    def package(self) -> List[ArtifactPackage]:
        if self.console.dry_run:
            self.console.dry(f"Would package {self.name} into {self.packages_dir}")
            return []
        result = ClassificationResult.from_mapping(json.loads(self.classification_file.read_text(encoding="utf-8")))
        result.ensure_no_conflicts()
        packages = packages_for(
            self.name,
            result.packages,
            self.package_specs(),
            unit_dir=self.unit_dir,
            root=self.settings.root,
            default_dir=self.module.package_dir,
        )

        written: List[ArtifactPackage] = []
        keep: set[Path] = set()
        for package in packages:
            target = self.packages_dir / package.destination
            keep.add(target)
            written.append(
                write_package(package, target, version=self.settings.version, mtime=self.settings.package_mtime)
            )
            self.console.debug(f"{self.name}: packaged {package.name} -> {package.destination}")

        if self.packages_dir.is_dir():
            for stale in sorted(self.packages_dir.rglob("*"), reverse=True):
                if stale.is_file() and stale not in keep:
                    stale.unlink()
                elif stale.is_dir() and not any(stale.iterdir()):
                    stale.rmdir()
        else:
            self.packages_dir.mkdir(parents=True)

        index = [
            {**package.to_mapping(), "file": package.packaged_file.relative_to(self.packages_dir).as_posix()}
            for package in written
        ]
        write_if_changed(self.packages_index, (json.dumps(index, indent=2) + "\n").encode("utf-8"))
        return written

    def load_packages(self) -> List[ArtifactPackage]:
        """Packages recorded by the last successful ``package`` step."""

        if not self.packages_index.is_file():
            return []
        entries = json.loads(self.packages_index.read_text(encoding="utf-8"))
        packages: List[ArtifactPackage] = []
        for entry in entries:
            package = ArtifactPackage.from_mapping(entry)
            if package.packaged_file is not None:
                package = package.with_file(self.packages_dir / package.packaged_file)
            packages.append(package)
        return packages

    def _library_modules(self) -> List[ModuleDefinition]:
        return [self.module] + [self.registry.get(name) for name in self.registry.upstream_closure(self.name)]

    def _library_table(self) -> List[object]:
        return [
            [definition.name, definition.libraries.include, definition.libraries.exclude]
            for definition in self._library_modules()
        ]

    def _library_roots(self) -> List[Path]:
        roots: List[Path] = []
        for definition in self._library_modules():
            base = self._path(definition.source_dir)
            for pattern in definition.libraries.include:
                prefix = _literal_base(pattern)
                root = base / prefix if prefix else base
                if root not in roots:
                    roots.append(root)
        return roots

    def resolve_libraries(self) -> Dict[str, Path]:
        """Runtime library closure: own globs first, then upstream modules nearest first.

        Libraries are keyed by file name and the first one found wins. In strict
        mode a later file with the same name but different content is an error.
        """

        chosen: Dict[str, Path] = {}
        for definition in self._library_modules():
            base = self._path(definition.source_dir)
            for _, path in find_files(base, definition.libraries.include, definition.libraries.exclude):
                existing = chosen.get(path.name)
                if existing is None:
                    chosen[path.name] = path
                    continue
                if existing.resolve() == path.resolve():
                    continue
                if self.settings.strict_libraries and digest_file(existing) != digest_file(path):
                    raise DependencyConflictError(path.name, str(existing), str(path))
                self.console.warn(
                    f"{self.name}: duplicate library '{path.name}' from '{definition.name}' skipped, keeping '{existing}'"
                )
        return chosen

    def copy_libraries(self) -> Dict[str, Path]:
        libraries = self.resolve_libraries()
        if self.console.dry_run:
            self.console.dry(f"Would copy {len(libraries)} librar(ies) into {self.libraries_dir}")
            return libraries
        self.libraries_dir.mkdir(parents=True, exist_ok=True)
        for existing in sorted(self.libraries_dir.iterdir()):
            if existing.name not in libraries:
                if existing.is_dir():
                    shutil.rmtree(existing)
                else:
                    existing.unlink()
        for filename, source in sorted(libraries.items()):
            target = self.libraries_dir / filename
            if write_if_changed(target, source.read_bytes()):
                shutil.copystat(source, target)
        self.console.debug(f"{self.name}: {len(libraries)} runtime librar(ies) collected")
        return libraries


def build_pipelines(
    registry: ModuleRegistry,
    settings: PipelineSettings,
    *,
    runner: CommandRunner,
    console: Console,
) -> Dict[str, ModulePipeline]:
    return {
        definition.name: ModulePipeline(definition, registry, settings, runner=runner, console=console)
        for definition in registry
    }


def module_targets(modules: Iterable[str]) -> List[str]:
    return [task_name(name, "done") for name in modules]


__all__ = [
    "LibrarySet",
    "ModulePipeline",
    "ModuleState",
    "ModuleStateTracker",
    "PipelineSettings",
    "TASK_STEPS",
    "build_pipelines",
    "find_files",
    "module_targets",
    "split_task_name",
    "task_name",
]
