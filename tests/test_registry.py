from __future__ import annotations

import unittest

from distbuild.config_loader import ModuleDefinition
from distbuild.errors import ConfigurationError, CycleError
from distbuild.registry import ModuleRegistry


def _module(name: str, *depends_on: str) -> ModuleDefinition:
    return ModuleDefinition(name=name, source_dir=name, unit_dir=f"{name}/classes", depends_on=list(depends_on))


class ModuleRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = ModuleRegistry.from_definitions(
            [
                _module("webapp", "core", "ldap"),
                _module("ldap", "core"),
                _module("core"),
                _module("cli", "common"),
                _module("common"),
            ]
        )

    def test_build_order_follows_dependencies(self) -> None:
        self.assertEqual(self.registry.build_order(), ["common", "cli", "core", "ldap", "webapp"])
        self.assertEqual([definition.name for definition in self.registry], self.registry.build_order())
        self.assertEqual(len(self.registry), 5)

    def test_selection_pulls_in_upstream_modules(self) -> None:
        self.assertEqual(self.registry.build_order(["ldap"]), ["core", "ldap"])
        self.assertEqual(self.registry.build_order(["cli", "ldap"]), ["common", "cli", "core", "ldap"])

    def test_relations(self) -> None:
        self.assertEqual(self.registry.upstream("webapp"), ["core", "ldap"])
        self.assertEqual(self.registry.upstream_closure("webapp"), ["core", "ldap"])
        self.assertEqual(self.registry.upstream_closure("core"), [])
        self.assertEqual(self.registry.downstream("core"), ["ldap", "webapp"])
        self.assertIn("cli", self.registry)
        with self.assertRaises(KeyError):
            self.registry.get("saml")

    def test_upstream_closure_is_nearest_first(self) -> None:
        registry = ModuleRegistry.from_definitions(
            [_module("base"), _module("api", "base"), _module("impl", "api"), _module("app", "impl")]
        )

        self.assertEqual(registry.upstream_closure("app"), ["impl", "api", "base"])

    def test_unknown_upstream(self) -> None:
        with self.assertRaises(ConfigurationError):
            ModuleRegistry.from_definitions([_module("ldap", "core")])

    def test_cycles_are_rejected(self) -> None:
        with self.assertRaises(CycleError) as ctx:
            ModuleRegistry.from_definitions([_module("a", "b"), _module("b", "c"), _module("c", "a")])
        self.assertEqual(ctx.exception.cycle, ["a", "b", "c", "a"])
        with self.assertRaises(CycleError):
            ModuleRegistry.from_definitions([_module("self", "self")])

    def test_duplicate_module(self) -> None:
        registry = ModuleRegistry()
        registry.add(_module("core"))
        with self.assertRaises(ConfigurationError):
            registry.add(_module("core"))


if __name__ == "__main__":
    unittest.main()
