"""Build orchestration: turns the configuration into a task graph and runs it."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence
import json
import os
import shutil

from core.command_runner import CommandRunner, RecordingCommandRunner, SubprocessCommandRunner

from .config_loader import ConfigurationStore, ResourceTree
from .console import Console
from .distribution import Distribution, DistributionPackager, ensure_valid, find_archives
from .errors import BuildFailure, ConfigurationError, SigningError
from .graph import BuildReport, ConsoleTaskListener, ExecutionPlan, Task, TaskGraph, TaskStateStore
from .pipeline import (
    ModulePipeline,
    ModuleState,
    ModuleStateTracker,
    PipelineSettings,
    build_pipelines,
    module_targets,
)
from .registry import ModuleRegistry
from .staging import DuplicatePolicy, ResourceInput, StagingAssembler, StagingTree, StampOptions, summarize
from .stamping import checksum, sign

BUILD_TARGET = "build"
DIST_TARGET = "dist"
INFO_TASK = "dist:info"
ASSEMBLE_TASK = "dist:assemble"
SUMMARY_TASK = "dist:summary"
VALIDATE_TASK = "dist:validate"
EXTENSIONS_TASK = "dist:extensions"
CHECKSUM_TASK = "dist:checksum"
SIGN_TASK = "dist:sign"


def archive_task(archive_format: str) -> str:
    return f"dist:archive:{archive_format}"


@dataclass(slots=True)
class BuildOptions:
    workers: int | None = None
    force: bool = False
    dry_run: bool = False
    sign: bool = True


@dataclass(slots=True)
class DistResult:
    report: BuildReport
    distributions: List[Distribution] = field(default_factory=list)
    extension_archives: List[Path] = field(default_factory=list)
    checksums: List[Path] = field(default_factory=list)
    signatures: List[Path] = field(default_factory=list)


class BuildEngine:
    """Owns the registry, the module pipelines and the distribution tasks."""

    def __init__(
        self,
        store: ConfigurationStore,
        console: Console,
        *,
        options: BuildOptions | None = None,
        runner: CommandRunner | None = None,
        state_store: TaskStateStore | None = None,
    ):
        self.store = store
        self.console = console
        self.options = options or BuildOptions(dry_run=console.dry_run)
        if runner is None:
            runner = RecordingCommandRunner() if self.options.dry_run else SubprocessCommandRunner()
        self.runner = runner
        if state_store is None:
            state_file = store.state_file
            if state_file is None or self.options.dry_run:
                state_store = TaskStateStore()
            else:
                state_store = TaskStateStore.load(state_file)
        self.state_store = state_store
        self.registry = ModuleRegistry.from_definitions(store.modules)
        self.settings = PipelineSettings(
            root=store.root,
            build_dir=store.build_dir,
            version=store.global_config.version,
            strict_libraries=store.global_config.strict_libraries,
        )
        self.pipelines: Dict[str, ModulePipeline] = build_pipelines(
            self.registry, self.settings, runner=self.runner, console=console
        )
        self.tracker = ModuleStateTracker(self.registry.names())
        self.staging_tree = StagingTree.create(store.staging_dir, store.staging.roles)
        distribution = store.distribution
        self.packager = DistributionPackager(
            console,
            product=store.global_config.product,
            version=store.global_config.version,
            output_dir=store.output_dir,
            build_timestamp=distribution.build_timestamp,
            launcher_patterns=distribution.launcher_patterns,
            required_files=distribution.required_files,
            required_dirs=distribution.required_dirs,
        )
        self._last_dist = DistResult(report=BuildReport())

    @property
    def info_dir(self) -> Path:
        return self.store.build_dir / "info"

    @property
    def module_states(self) -> Dict[str, ModuleState]:
        return dict(self.tracker.states)

    def _signing_enabled(self, sign_requested: bool) -> bool:
        if not sign_requested:
            return False
        signing = self.store.signing
        if signing.key_file:
            return True
        self.console.debug("No signing key configured; archives will not be signed")
        return False

    def create_graph(self, *, sign: bool | None = None) -> TaskGraph:
        """Build the full graph: per-module chains plus the distribution tasks.

        Plan-time checks run here: rule tables are expanded, package
        destinations must be unique, and classification conflicts are reported
        for every module whose compiled unit already exists.
        """

        sign = self.options.sign if sign is None else sign
        workers = self.options.workers or self.store.global_config.workers
        self.tracker = ModuleStateTracker(self.registry.names())
        graph = TaskGraph(
            workers=workers,
            state_store=self.state_store,
            listeners=[ConsoleTaskListener(self.console), self.tracker],
        )

        for name in self.registry.build_order():
            pipeline = self.pipelines[name]
            pipeline.check_configuration()
            for task in pipeline.tasks():
                graph.register(task)

        module_done = tuple(module_targets(self.registry.build_order()))
        graph.register(Task(name=BUILD_TARGET, depends_on=module_done, description="build every module"))
        self._register_dist_tasks(graph, module_done, sign=self._signing_enabled(sign))
        return graph

    def _resource_inputs(self) -> List[ResourceInput]:
        inputs: List[ResourceInput] = []

        def convert(resource: ResourceTree, base: Path, origin: str) -> ResourceInput:
            source = Path(resource.source)
            return ResourceInput(
                source=source if source.is_absolute() else base / source,
                destination=resource.destination,
                include=tuple(resource.include),
                exclude=tuple(resource.exclude),
                origin=origin,
            )

        for name in self.registry.build_order():
            pipeline = self.pipelines[name]
            for resource in pipeline.module.resources:
                inputs.append(convert(resource, pipeline.source_dir, f"resources of {name}"))
        for resource in self.store.resources:
            inputs.append(convert(resource, self.store.root, "global resources"))
        if self.store.distribution.info_file:
            inputs.append(ResourceInput(source=self.info_dir, origin="build info"))
        return inputs

    def _register_dist_tasks(self, graph: TaskGraph, module_done: Sequence[str], *, sign: bool) -> None:
        store = self.store
        distribution = store.distribution
        version = store.global_config.version
        staging_root = self.staging_tree.root
        info_file = distribution.info_file

        assemble_inputs: List[Path] = []
        for name in self.registry.build_order():
            pipeline = self.pipelines[name]
            assemble_inputs.extend([pipeline.packages_dir, pipeline.packages_index, pipeline.libraries_dir])
        assemble_inputs.extend(resource.source for resource in self._resource_inputs())

        assemble_depends = list(module_done)
        if info_file:
            graph.register(
                Task(
                    name=INFO_TASK,
                    action=self.write_build_info,
                    inputs=(store.config_dir,),
                    outputs=(self.info_dir,),
                    description=f"write {info_file}",
                    signature=json.dumps([version, distribution.build_timestamp, info_file]),
                )
            )
            assemble_depends.append(INFO_TASK)

        graph.register(
            Task(
                name=ASSEMBLE_TASK,
                action=self.assemble,
                depends_on=tuple(assemble_depends),
                finalized_by=(SUMMARY_TASK,),
                inputs=tuple(assemble_inputs),
                outputs=(staging_root,),
                description=f"assemble {staging_root}",
                signature=json.dumps(
                    [
                        version,
                        store.global_config.version_token,
                        store.stamping.suffixes,
                        store.stamping.paths,
                        {role: list(dirs) for role, dirs in self.staging_tree.roles.items()},
                        store.staging.duplicates,
                        [[rule.pattern, rule.policy] for rule in store.staging.duplicate_rules],
                    ],
                    sort_keys=True,
                ),
            )
        )
        graph.register(Task(name=SUMMARY_TASK, action=self.print_summary, description="summarize staging tree"))
        graph.register(
            Task(
                name=VALIDATE_TASK,
                action=self.validate_staging,
                depends_on=(ASSEMBLE_TASK,),
                description="validate staging tree",
            )
        )

        archive_names: List[str] = []
        archive_files: List[Path] = []
        for archive_format in distribution.formats:
            try:
                target = self.packager.archive_path(archive_format)
            except ValueError as exc:
                raise ConfigurationError(f"distribution.formats: {exc}") from exc
            name = archive_task(archive_format)
            graph.register(
                Task(
                    name=name,
                    action=self._archive_action(archive_format),
                    depends_on=(VALIDATE_TASK,),
                    inputs=(staging_root,),
                    outputs=(target,),
                    description=f"write {target.name}",
                    signature=json.dumps([version, distribution.build_timestamp, distribution.launcher_patterns]),
                )
            )
            archive_names.append(name)
            archive_files.append(target)

        final_depends = list(archive_names)
        if distribution.extension_archives:
            graph.register(
                Task(
                    name=EXTENSIONS_TASK,
                    action=self.package_extensions,
                    depends_on=(VALIDATE_TASK,),
                    inputs=(staging_root,),
                    outputs=(store.output_dir / "extensions",),
                    description="write per-extension archives",
                    signature=json.dumps([version, distribution.build_timestamp, store.checksum_algorithm]),
                )
            )
            final_depends.append(EXTENSIONS_TASK)

        algorithm = store.checksum_algorithm
        graph.register(
            Task(
                name=CHECKSUM_TASK,
                action=lambda: self.write_checksums(archive_files),
                depends_on=tuple(archive_names),
                inputs=tuple(archive_files),
                outputs=tuple(path.with_name(f"{path.name}.{algorithm}") for path in archive_files),
                description=f"write {algorithm} checksums",
                signature=algorithm,
            )
        )
        final_depends.append(CHECKSUM_TASK)

        if sign:
            graph.register(
                Task(
                    name=SIGN_TASK,
                    action=lambda: self.sign_archives(archive_files),
                    depends_on=(CHECKSUM_TASK,),
                    inputs=tuple(archive_files),
                    outputs=tuple(path.with_name(path.name + ".sig") for path in archive_files),
                    description="sign archives",
                    signature=str(store.signing.key_file),
                )
            )
            final_depends.append(SIGN_TASK)

        graph.register(Task(name=DIST_TARGET, depends_on=tuple(final_depends), description="full distribution"))

    def _archive_action(self, archive_format: str):
        def _action() -> None:
            distribution = self.packager.package(self.staging_tree, archive_format)
            self._last_dist.distributions.append(distribution)

        return _action

    def write_build_info(self) -> Path:
        target = self.info_dir / (self.store.distribution.info_file or "VERSION.txt")
        return self.packager.write_build_info(target, self.staging_tree.directories())

    def assemble(self) -> None:
        store = self.store
        packages = []
        for name in self.registry.build_order():
            packages.extend(self.pipelines[name].load_packages())
        library_sets = [self.pipelines[name].library_set() for name in self.registry.build_order()]
        assembler = StagingAssembler(
            self.console,
            duplicates=DuplicatePolicy.from_settings(store.staging),
            stamping=StampOptions(
                version=store.global_config.version,
                token=store.global_config.version_token,
                suffixes=tuple(store.stamping.suffixes),
                paths=tuple(store.stamping.paths),
            ),
        )
        assembler.assemble(self.staging_tree, packages, self._resource_inputs(), library_sets)

    def print_summary(self) -> None:
        lines = summarize(self.staging_tree)
        if not lines:
            return
        self.console.info(f"Staging tree {self.staging_tree.root}:")
        for line in lines:
            self.console.info(f"  - {line}")

    def validate_staging(self) -> None:
        distribution = self.store.distribution
        ensure_valid(self.staging_tree, distribution.required_files, distribution.required_dirs)
        self.console.debug("Staging tree is valid")

    def package_extensions(self) -> List[Path]:
        written = self.packager.package_extensions(self.staging_tree, algorithm=self.store.checksum_algorithm)
        self._last_dist.extension_archives.extend(written)
        return written

    def write_checksums(self, files: Sequence[Path]) -> List[Path]:
        written = [checksum(path, self.store.checksum_algorithm) for path in files]
        for sidecar in written:
            self.console.debug(f"Wrote {sidecar.name}")
        self._last_dist.checksums.extend(written)
        return written

    def _signing_password(self) -> bytes | None:
        env_name = self.store.signing.password_env
        if not env_name:
            return None
        value = os.environ.get(env_name)
        if value is None:
            raise SigningError(f"Environment variable '{env_name}' holding the key password is not set")
        return value.encode("utf-8")

    def sign_archives(self, files: Sequence[Path]) -> List[Path]:
        key_file = self.store.signing.key_file
        if not key_file:
            raise SigningError("No signing key configured")
        key_path = self.store.path(key_file)
        password = self._signing_password()
        written = [sign(path, key_path, password=password) for path in files]
        self._last_dist.signatures.extend(written)
        return written

    def plan(self, targets: Sequence[str], *, sign: bool | None = None) -> ExecutionPlan:
        return self.create_graph(sign=sign).plan(targets)

    def run(self, targets: Sequence[str], *, sign: bool | None = None) -> BuildReport:
        graph = self.create_graph(sign=sign)
        plan = graph.plan(targets)
        self.console.debug(f"Executing {len(plan)} task(s) with {graph.workers} worker(s)")
        report = graph.execute(plan, force=self.options.force)
        if isinstance(self.runner, RecordingCommandRunner):
            for line in self.runner.iter_formatted():
                self.console.dry(line)
        self.console.info(report.summary())
        if not report.ok:
            raise BuildFailure(report)
        return report

    def build(self, modules: Sequence[str] | None = None) -> BuildReport:
        if modules:
            for name in modules:
                self.registry.get(name)
            return self.run(module_targets(modules))
        return self.run([BUILD_TARGET])

    def dist(self, *, sign: bool = True) -> DistResult:
        self._last_dist = DistResult(report=BuildReport())
        report = self.run([DIST_TARGET], sign=sign)
        self._last_dist.report = report
        return self._last_dist

    def checksum_files(self, files: Sequence[Path] | None = None) -> List[Path]:
        targets = list(files) if files else find_archives(self.store.output_dir)
        if not targets:
            raise FileNotFoundError(f"No archives found in '{self.store.output_dir}'")
        return [checksum(path, self.store.checksum_algorithm) for path in targets]

    def clean(self) -> List[Path]:
        """Remove staging, work and output trees plus the task state file."""

        store = self.store
        removed: List[Path] = []
        protected = {store.root.resolve(), store.config_dir.resolve()}
        candidates = [store.staging_dir, store.output_dir, store.build_dir]
        for path in candidates:
            resolved = path.resolve()
            if resolved in protected or store.config_dir.resolve().is_relative_to(resolved):
                raise ConfigurationError(f"Refusing to remove '{path}': it contains the project configuration")
            if not path.exists():
                continue
            if self.console.dry_run:
                self.console.dry(f"Would remove {path}")
                continue
            shutil.rmtree(path)
            removed.append(path)
        state_file = store.state_file
        if state_file is not None and state_file.exists() and not self.console.dry_run:
            state_file.unlink()
            removed.append(state_file)
        self.state_store.clear()
        return removed


__all__ = [
    "ASSEMBLE_TASK",
    "BUILD_TARGET",
    "BuildEngine",
    "BuildOptions",
    "CHECKSUM_TASK",
    "DIST_TARGET",
    "DistResult",
    "EXTENSIONS_TASK",
    "INFO_TASK",
    "SIGN_TASK",
    "SUMMARY_TASK",
    "VALIDATE_TASK",
    "archive_task",
]
