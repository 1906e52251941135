from __future__ import annotations

import unittest

from core.template import (
    CycleDetected,
    TemplateError,
    TemplateResolver,
    find_cycle,
    topological_order,
)


class TemplateResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.context = {
            "product": {"name": "acme", "version": "4.5.2"},
            "module": {
                "name": "ldap",
                "package_dir": "extensions/{{module.name}}",
                "conf_dir": "{{module.package_dir}}/conf",
                "depends_on": ["core", "common"],
            },
        }
        self.resolver = TemplateResolver(self.context)

    def test_resolve_placeholder(self) -> None:
        self.assertEqual(self.resolver.resolve("{{product.name}}-{{product.version}}"), "acme-4.5.2")
        self.assertEqual(self.resolver.resolve("plain text"), "plain text")

    def test_single_placeholder_keeps_value_type(self) -> None:
        self.assertEqual(self.resolver.resolve("{{module.depends_on}}"), ["core", "common"])
        self.assertEqual(self.resolver.resolve("needs {{module.depends_on}}"), "needs core common")

    def test_nested_variable_resolution(self) -> None:
        self.assertEqual(self.resolver.resolve("{{module.conf_dir}}"), "extensions/ldap/conf")
        self.assertEqual(
            self.resolver.resolve({"dirs": ["{{module.package_dir}}", 3]}),
            {"dirs": ["extensions/ldap", 3]},
        )

    def test_missing_path(self) -> None:
        with self.assertRaises(TemplateError):
            self.resolver.resolve("{{module.unknown}}")

    def test_circular_reference(self) -> None:
        resolver = TemplateResolver({"a": {"x": "{{a.y}}", "y": "{{a.x}}"}})

        with self.assertRaises(TemplateError) as ctx:
            resolver.resolve("{{a.x}}")
        self.assertIn("a.x -> a.y -> a.x", str(ctx.exception))


class DependencyOrderTests(unittest.TestCase):
    def test_topological_order_breaks_ties_alphabetically(self) -> None:
        order = topological_order({"webapp": ["ldap", "core"], "ldap": ["core"], "core": [], "cli": []})

        self.assertEqual(order, ["cli", "core", "ldap", "webapp"])

    def test_unknown_dependencies_are_ignored(self) -> None:
        self.assertEqual(topological_order({"ldap": ["core"]}), ["ldap"])

    def test_cycle(self) -> None:
        graph = {"a": ["b"], "b": ["c"], "c": ["a"], "d": []}

        self.assertEqual(find_cycle(graph), ["a", "b", "c", "a"])
        self.assertEqual(find_cycle({"a": [], "b": ["a"]}), [])
        with self.assertRaises(CycleDetected) as ctx:
            topological_order(graph)
        self.assertEqual(ctx.exception.cycle, ["a", "b", "c", "a"])


if __name__ == "__main__":
    unittest.main()
