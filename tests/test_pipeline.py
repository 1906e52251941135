from __future__ import annotations

from pathlib import Path
from typing import Mapping, Sequence
import io
import json
import tempfile
import unittest
import zipfile

from core.command_runner import CommandError, CommandResult, CommandRunner, RecordingCommandRunner
from distbuild.config_loader import CompileSettings, LibrarySettings, ModuleDefinition, PackageSpec
from distbuild.console import Console, SilentConsole
from distbuild.errors import ClassificationConflictError, CompileError, ConfigurationError, DependencyConflictError
from distbuild.graph import TaskGraph, TaskState
from distbuild.packaging import read_manifest
from distbuild.pipeline import (
    ModuleState,
    ModuleStateTracker,
    PipelineSettings,
    build_pipelines,
    find_files,
    module_targets,
)
from distbuild.registry import ModuleRegistry


class _FailingRunner(CommandRunner):
    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
    ) -> CommandResult:
        raise CommandError(CommandResult(command=list(command), returncode=2, stdout="", stderr="javac: 1 error"))


class ModulePipelineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.settings = PipelineSettings(root=self.root, build_dir=self.root / "build", version="1.0")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _write(self, relative: str, data: bytes = b"data") -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def _module(self, name: str, **kwargs) -> ModuleDefinition:
        return ModuleDefinition(
            name=name,
            source_dir=f"src/{name}",
            unit_dir=f"src/{name}/classes",
            template_context={"module": {"name": name}},
            **kwargs,
        )

    def _run(self, definitions, *, runner: CommandRunner | None = None, console: Console | None = None):
        registry = ModuleRegistry.from_definitions(definitions)
        pipelines = build_pipelines(
            registry,
            self.settings,
            runner=runner or RecordingCommandRunner(),
            console=console or SilentConsole(),
        )
        tracker = ModuleStateTracker(registry.names())
        graph = TaskGraph(workers=2, listeners=[tracker])
        for name in registry.build_order():
            pipelines[name].check_configuration()
            for task in pipelines[name].tasks():
                graph.register(task)
        report = graph.run(module_targets(registry.build_order()))
        return report, tracker, pipelines

    def _core(self) -> ModuleDefinition:
        self._write("src/core/classes/org/acme/core/Api.class", b"\xca\xfe\xba\xbe api")
        self._write("src/core/classes/org/acme/core/impl/Impl.class", b"\xca\xfe\xba\xbe impl")
        self._write("src/core/classes/org/acme/core/messages.properties", b"greeting=hello\n")
        self._write("src/core/classes/build-info.txt", b"scratch")
        self._write("src/core/lib/common.jar", b"common v1")
        self._write("src/core/lib/common-sources.jar", b"sources")
        return self._module(
            "core",
            rules=[
                {
                    "package": "core-api",
                    "include": ["org/acme/core/*.class", "org/acme/core/*.properties"],
                    "main_class": "org.acme.core.Main",
                    "class_path": ["common.jar"],
                },
                {"package": "{{module.name}}-impl", "include": ["org/acme/core/impl/**"]},
            ],
            libraries=LibrarySettings(include=["lib/*.jar"], exclude=["*-sources.jar"]),
        )

    def test_module_reaches_done(self) -> None:
        report, tracker, pipelines = self._run([self._core()])

        self.assertTrue(report.ok)
        self.assertEqual(
            tracker.history["core"],
            [
                ModuleState.UNBUILT,
                ModuleState.COMPILING,
                ModuleState.CLASSIFIED,
                ModuleState.PACKAGED,
                ModuleState.DEPENDENCIES_COPIED,
                ModuleState.DONE,
            ],
        )
        pipeline = pipelines["core"]
        classification = json.loads(pipeline.classification_file.read_text())
        self.assertEqual(classification["unclassified"], ["build-info.txt"])

        api_jar = pipeline.packages_dir / "server-lib" / "core-api.jar"
        with zipfile.ZipFile(api_jar) as archive:
            self.assertEqual(
                archive.namelist(),
                [
                    "META-INF/",
                    "META-INF/MANIFEST.MF",
                    "org/",
                    "org/acme/",
                    "org/acme/core/",
                    "org/acme/core/Api.class",
                    "org/acme/core/messages.properties",
                ],
            )
        manifest = read_manifest(api_jar)
        self.assertEqual(manifest["Main-Class"], "org.acme.core.Main")
        self.assertEqual(manifest["Class-Path"], "common.jar")
        self.assertEqual(manifest["Implementation-Version"], "1.0")
        self.assertTrue((pipeline.packages_dir / "server-lib" / "core-impl.jar").is_file())

        packages = pipeline.load_packages()
        self.assertEqual([package.name for package in packages], ["core-api", "core-impl"])
        self.assertEqual(packages[0].packaged_file, api_jar)
        self.assertEqual(sorted(path.name for path in pipeline.libraries_dir.iterdir()), ["common.jar"])

    def test_repeated_packaging_is_byte_identical(self) -> None:
        core = self._core()
        _, _, pipelines = self._run([core])
        jar = pipelines["core"].packages_dir / "server-lib" / "core-api.jar"
        first_bytes = jar.read_bytes()
        first_mtime = jar.stat().st_mtime_ns

        _, _, pipelines = self._run([core])

        self.assertEqual(jar.read_bytes(), first_bytes)
        self.assertEqual(jar.stat().st_mtime_ns, first_mtime)

    def test_upstream_compile_failure_leaves_downstream_unbuilt(self) -> None:
        module_a = self._module("A", compile=CompileSettings(command=["javac", "-d", "classes"]))
        self._write("src/A/Main.java", b"class Main {}")
        self._write("src/B/classes/org/b/B.class", b"\xca\xfe")
        module_b = self._module("B", depends_on=["A"], rules=[{"package": "b", "include": ["**"]}])

        report, tracker, pipelines = self._run([module_a, module_b], runner=_FailingRunner())

        self.assertEqual(report.failed, ["A:compile"])
        self.assertIsInstance(report.failure.cause, CompileError)
        self.assertIn("B:compile", report.blocked)
        self.assertIn("B:done", report.blocked)
        self.assertEqual(tracker.state("A"), ModuleState.FAILED)
        self.assertEqual(tracker.state("B"), ModuleState.UNBUILT)
        self.assertEqual(tracker.history["B"], [ModuleState.UNBUILT])
        self.assertEqual(report.states["B:classify"], TaskState.BLOCKED)
        self.assertFalse(pipelines["B"].work_dir.exists())

    def test_missing_prebuilt_unit_is_a_compile_error(self) -> None:
        report, tracker, _ = self._run([self._module("ghost")])

        self.assertEqual(report.failed, ["ghost:compile"])
        self.assertIsInstance(report.failure.cause, CompileError)
        self.assertEqual(tracker.state("ghost"), ModuleState.FAILED)

    def test_dry_run_records_commands_without_writing(self) -> None:
        runner = RecordingCommandRunner()
        module = self._module("app", compile=CompileSettings(command=["make", "classes"], environment={"JOBS": "2"}))

        report, tracker, pipelines = self._run([module], runner=runner, console=SilentConsole(dry_run=True))

        self.assertTrue(report.ok)
        self.assertEqual(tracker.state("app"), ModuleState.DONE)
        self.assertEqual(runner.commands[0].command, ["make", "classes"])
        self.assertEqual(runner.commands[0].cwd, str(self.root / "src" / "app"))
        self.assertEqual(runner.commands[0].env, {"JOBS": "2"})
        self.assertFalse(pipelines["app"].work_dir.exists())

    def test_conflicting_rules_fail_at_plan_time(self) -> None:
        self._write("src/core/classes/org/acme/Api.class")
        module = self._module(
            "core",
            rules=[{"package": "api", "include": ["org/**"]}, {"package": "all", "include": ["**"]}],
        )

        with self.assertRaises(ClassificationConflictError):
            self._run([module])

    def test_packages_cannot_share_a_destination(self) -> None:
        module = self._module(
            "core",
            rules=[{"package": "a", "include": ["a/**"]}, {"package": "b", "include": ["b/**"]}],
            packages={
                "a": PackageSpec(name="a", destination="server-lib/core.jar"),
                "b": PackageSpec(name="b", destination="server-lib/core.jar"),
            },
        )

        with self.assertRaises(ConfigurationError):
            self._run([module])


class LibraryResolutionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        for relative, data in {
            "src/core/lib/common.jar": b"common v1",
            "src/core/lib/core-only.jar": b"core",
            "src/app/lib/common.jar": b"common v2",
            "src/app/lib/app.jar": b"app",
        }.items():
            path = self.root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        libraries = LibrarySettings(include=["lib/*.jar"])
        self.registry = ModuleRegistry.from_definitions(
            [
                ModuleDefinition(name="core", source_dir="src/core", unit_dir="src/core/classes", libraries=libraries),
                ModuleDefinition(
                    name="app",
                    source_dir="src/app",
                    unit_dir="src/app/classes",
                    depends_on=["core"],
                    libraries=libraries,
                ),
            ]
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _pipeline(self, *, strict: bool, console: Console | None = None):
        settings = PipelineSettings(
            root=self.root,
            build_dir=self.root / "build",
            version="1.0",
            strict_libraries=strict,
        )
        pipelines = build_pipelines(self.registry, settings, runner=RecordingCommandRunner(), console=console or SilentConsole())
        return pipelines["app"]

    def test_own_libraries_win_and_duplicates_warn(self) -> None:
        stderr = io.StringIO()
        console = Console(level="warn", stdout=io.StringIO(), stderr=stderr)

        libraries = self._pipeline(strict=False, console=console).resolve_libraries()

        self.assertEqual(sorted(libraries), ["app.jar", "common.jar", "core-only.jar"])
        self.assertEqual(libraries["common.jar"].read_bytes(), b"common v2")
        self.assertIn("duplicate library 'common.jar'", stderr.getvalue())

    def test_strict_mode_rejects_differing_duplicates(self) -> None:
        with self.assertRaises(DependencyConflictError) as ctx:
            self._pipeline(strict=True).resolve_libraries()
        self.assertEqual(ctx.exception.filename, "common.jar")

    def test_strict_mode_accepts_identical_duplicates(self) -> None:
        (self.root / "src/core/lib/common.jar").write_bytes(b"common v2")

        libraries = self._pipeline(strict=True).resolve_libraries()

        self.assertEqual(libraries["common.jar"], self.root / "src/app/lib/common.jar")

    def test_copy_removes_stale_libraries(self) -> None:
        pipeline = self._pipeline(strict=False)
        pipeline.libraries_dir.mkdir(parents=True)
        (pipeline.libraries_dir / "old.jar").write_bytes(b"old")

        pipeline.copy_libraries()

        self.assertEqual(
            sorted(path.name for path in pipeline.libraries_dir.iterdir()),
            ["app.jar", "common.jar", "core-only.jar"],
        )

    def test_find_files_applies_excludes_to_names(self) -> None:
        base = self.root / "src" / "core"
        (base / "lib" / "core-sources.jar").write_bytes(b"src")

        found = find_files(base, ["lib/*.jar"], ["*-sources.jar"])

        self.assertEqual([relative for relative, _ in found], ["lib/common.jar", "lib/core-only.jar"])


if __name__ == "__main__":
    unittest.main()
