from __future__ import annotations

from pathlib import Path
import io
import os
import tempfile
import unittest

from distbuild.config_loader import DuplicateRule, ROLE_ORDER
from distbuild.console import Console, SilentConsole
from distbuild.errors import AssemblyError, ConfigurationError, DuplicateEntryError
from distbuild.packaging import ArtifactPackage
from distbuild.pipeline import LibrarySet
from distbuild.staging import DuplicatePolicy, ResourceInput, StagingAssembler, StagingTree, StampOptions, summarize


class StagingTreeTests(unittest.TestCase):
    def test_role_lookup(self) -> None:
        tree = StagingTree.create(Path("/tmp/staging"))

        self.assertEqual(tree.role_for("server-lib/core.jar"), "library")
        self.assertEqual(tree.role_for("conf/app.properties"), "configuration")
        self.assertEqual(tree.role_for("extensions/ldap/ldap.jar"), "extension")
        self.assertEqual(tree.role_for("public_api_html/index.html"), "web")
        self.assertEqual(tree.role_for("docs/guide.md"), "documentation")
        self.assertEqual(tree.role_for("VERSION.txt"), "library")
        self.assertEqual(tree.role_for("misc/notes.txt"), "library")

    def test_custom_roles(self) -> None:
        tree = StagingTree.create(Path("/tmp/staging"), {"documentation": ["manual"]})

        self.assertEqual(tree.role_for("manual/index.html"), "documentation")
        self.assertNotIn("docs", tree.directories())
        with self.assertRaises(ConfigurationError):
            StagingTree.create(Path("/tmp/staging"), {"binaries": ["bin"]})


class StagingAssemblerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.tree = StagingTree.create(self.root / "staging")

        self.core_jar = self._write("build/packages/core.jar", b"PK core")
        (self.root / "build" / "packages" / "core.jar").chmod(0o600)
        self.lib_dir = self.root / "build" / "lib"
        self._write("build/lib/common.jar", b"PK common")
        self._write("src/conf/app.properties", b"version=@@VERSION@@\nname=acme\n")
        self._write("src/conf/Thumbs.db", b"\x00thumbs")
        self._write("src/docs/guide.md", b"# Guide for @@VERSION@@\n")
        self._write("src/docs/logo.png", b"\x89PNG @@VERSION@@")
        self._write("src/bin/start.sh", b"#!/bin/sh\necho @@VERSION@@\n")
        (self.root / "src" / "bin" / "start.sh").chmod(0o755)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _write(self, relative: str, data: bytes) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def _assembler(self, console: Console | None = None, **kwargs) -> StagingAssembler:
        return StagingAssembler(
            console or SilentConsole(),
            stamping=StampOptions(version="4.5.2", suffixes=(".properties", ".md", ".sh")),
            **kwargs,
        )

    def _inputs(self):
        packages = [ArtifactPackage(name="core", module="core", destination="server-lib/core.jar", packaged_file=self.core_jar)]
        resources = [
            ResourceInput(source=self.root / "src" / "conf", destination="conf", exclude=("Thumbs.db",)),
            ResourceInput(source=self.root / "src" / "docs", destination="docs"),
            ResourceInput(source=self.root / "src" / "bin" / "start.sh"),
        ]
        libraries = [LibrarySet(module="core", destination="server-lib", directory=self.lib_dir)]
        return packages, resources, libraries

    def test_assemble_builds_the_role_layout(self) -> None:
        report = self._assembler().assemble(self.tree, *self._inputs())

        staging = self.tree.root
        for directory in self.tree.directories():
            self.assertTrue((staging / directory).is_dir(), directory)
        self.assertEqual(list(self.tree.roles), ROLE_ORDER)
        self.assertEqual((staging / "server-lib" / "core.jar").read_bytes(), b"PK core")
        self.assertEqual((staging / "server-lib" / "common.jar").read_bytes(), b"PK common")
        self.assertEqual((staging / "conf" / "app.properties").read_text(), "version=4.5.2\nname=acme\n")
        self.assertEqual((staging / "docs" / "guide.md").read_text(), "# Guide for 4.5.2\n")
        self.assertEqual((staging / "docs" / "logo.png").read_bytes(), b"\x89PNG @@VERSION@@")
        self.assertFalse((staging / "conf" / "Thumbs.db").exists())
        self.assertEqual(list((staging / "logs").iterdir()), [])
        self.assertEqual(sorted(report.stamped), ["conf/app.properties", "docs/guide.md", "start.sh"])
        self.assertEqual(report.files, 6)
        self.assertEqual(os.stat(staging / "start.sh").st_mode & 0o777, 0o755)
        self.assertEqual(os.stat(staging / "server-lib" / "core.jar").st_mode & 0o777, 0o600)

    def test_reassembling_unchanged_inputs_is_idempotent(self) -> None:
        assembler = self._assembler()
        assembler.assemble(self.tree, *self._inputs())
        snapshot = {
            path: (path.read_bytes(), path.stat().st_mtime_ns)
            for path in sorted(self.tree.root.rglob("*"))
            if path.is_file()
        }

        report = assembler.assemble(self.tree, *self._inputs())

        after = {
            path: (path.read_bytes(), path.stat().st_mtime_ns)
            for path in sorted(self.tree.root.rglob("*"))
            if path.is_file()
        }
        self.assertEqual(after, snapshot)
        self.assertEqual(report.written, [])
        self.assertEqual(len(report.unchanged), 6)

    def test_changed_input_rewrites_only_that_file(self) -> None:
        assembler = self._assembler()
        assembler.assemble(self.tree, *self._inputs())
        self._write("src/docs/guide.md", b"# New guide\n")

        report = assembler.assemble(self.tree, *self._inputs())

        self.assertEqual(report.written, ["docs/guide.md"])
        self.assertEqual((self.tree.root / "docs" / "guide.md").read_text(), "# New guide\n")

    def test_extension_duplicates_fail_by_default(self) -> None:
        self._write("one/ldap/plugin.xml", b"<one/>")
        self._write("two/ldap/plugin.xml", b"<two/>")
        resources = [
            ResourceInput(source=self.root / "one", destination="extensions", origin="module one"),
            ResourceInput(source=self.root / "two", destination="extensions", origin="module two"),
        ]

        with self.assertRaises(DuplicateEntryError) as ctx:
            self._assembler().assemble(self.tree, [], resources, [])

        self.assertEqual(ctx.exception.path, "extensions/ldap/plugin.xml")
        self.assertEqual(ctx.exception.sources, ("module one", "module two"))

    def _conflicting_conf(self):
        self._write("base/app.properties", b"mode=base\n")
        self._write("override/app.properties", b"mode=override\n")
        return [
            ResourceInput(source=self.root / "base", destination="conf", origin="base"),
            ResourceInput(source=self.root / "override", destination="conf", origin="override"),
        ]

    def test_configuration_duplicates_overwrite_by_default(self) -> None:
        report = self._assembler().assemble(self.tree, [], self._conflicting_conf(), [])

        self.assertEqual((self.tree.root / "conf" / "app.properties").read_text(), "mode=override\n")
        self.assertEqual(report.skipped, [])

    def test_glob_override_skips_later_duplicates(self) -> None:
        policy = DuplicatePolicy(overrides=[DuplicateRule(pattern="conf/*.properties", policy="skip")])

        report = self._assembler(duplicates=policy).assemble(self.tree, [], self._conflicting_conf(), [])

        self.assertEqual((self.tree.root / "conf" / "app.properties").read_text(), "mode=base\n")
        self.assertEqual(report.skipped, ["conf/app.properties"])

    def test_warn_policy_overwrites_and_logs(self) -> None:
        stderr = io.StringIO()
        console = Console(level="warn", stdout=io.StringIO(), stderr=stderr)
        policy = DuplicatePolicy(defaults={"configuration": "warn"})

        self._assembler(console, duplicates=policy).assemble(self.tree, [], self._conflicting_conf(), [])

        self.assertEqual((self.tree.root / "conf" / "app.properties").read_text(), "mode=override\n")
        self.assertIn("[WARN] conf/app.properties: override replaces base", stderr.getvalue())

    def test_paths_outside_the_staging_tree_are_rejected(self) -> None:
        resources = [ResourceInput(source=self.root / "src" / "docs", destination="../escape")]

        with self.assertRaises(AssemblyError):
            self._assembler().assemble(self.tree, [], resources, [])

    def test_unwritten_package_is_an_assembly_error(self) -> None:
        packages = [ArtifactPackage(name="core", destination="server-lib/core.jar")]

        with self.assertRaises(AssemblyError) as ctx:
            self._assembler().assemble(self.tree, packages, [], [])
        self.assertEqual(ctx.exception.path, "server-lib/core.jar")

    def test_missing_resource_source(self) -> None:
        with self.assertRaises(AssemblyError):
            self._assembler().assemble(self.tree, [], [ResourceInput(source=self.root / "nowhere")], [])

    def test_summarize_counts_files(self) -> None:
        self._assembler().assemble(self.tree, *self._inputs())

        lines = summarize(self.tree)

        self.assertIn("server-lib/ (2 files)", lines)
        self.assertIn("logs/ (0 files)", lines)
        self.assertIn("start.sh", lines)


if __name__ == "__main__":
    unittest.main()
