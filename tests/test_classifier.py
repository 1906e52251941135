from __future__ import annotations

from pathlib import Path
import random
import tempfile
import unittest
import warnings

from distbuild.classifier import (
    ClassificationResult,
    ClassificationRule,
    classify,
    classify_paths,
    expand_rules,
    glob_match,
    sort_rules,
)
from distbuild.errors import ClassificationConflictError, ConfigurationError


class GlobMatchTests(unittest.TestCase):
    def test_double_star_spans_directories(self) -> None:
        self.assertTrue(glob_match("**/*.class", "Api.class"))
        self.assertTrue(glob_match("**/*.class", "org/acme/Api.class"))
        self.assertTrue(glob_match("org/**/impl/*.class", "org/impl/Impl.class"))
        self.assertTrue(glob_match("org/**/impl/*.class", "org/acme/core/impl/Impl.class"))
        self.assertTrue(glob_match("org/acme/**", "org/acme/ldap/server/Server.class"))
        self.assertFalse(glob_match("org/acme/**", "org/other/Api.class"))

    def test_single_star_and_question_mark_stay_in_one_segment(self) -> None:
        self.assertTrue(glob_match("*.class", "Api.class"))
        self.assertFalse(glob_match("*.class", "org/Api.class"))
        self.assertTrue(glob_match("org/Ap?.class", "org/Api.class"))
        self.assertFalse(glob_match("org?Api.class", "org/Api.class"))
        self.assertFalse(glob_match("org/*", "org/acme/Api.class"))

    def test_character_classes(self) -> None:
        self.assertTrue(glob_match("[ab]pi.txt", "api.txt"))
        self.assertFalse(glob_match("[ab]pi.txt", "cpi.txt"))
        self.assertTrue(glob_match("[!a]pi.txt", "cpi.txt"))
        self.assertFalse(glob_match("[!a]pi.txt", "api.txt"))
        self.assertFalse(glob_match("org[!x]Api.class", "org/Api.class"))

    def test_character_class_metacharacters_are_literal(self) -> None:
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            self.assertFalse(glob_match("[^a]x", "bx"))
            self.assertTrue(glob_match("[^a]x", "^x"))
            self.assertTrue(glob_match("[^a]x", "ax"))
            self.assertTrue(glob_match("[[]x", "[x"))
            self.assertFalse(glob_match("[[]x", "x"))
            self.assertTrue(glob_match("[]a]x", "]x"))
            self.assertTrue(glob_match("[!]a]x", "bx"))
            self.assertFalse(glob_match("[!]a]x", "]x"))
            self.assertTrue(glob_match("[a&&b]x", "&x"))
        self.assertTrue(glob_match("lib[!]", "lib[!]"))

    def test_special_characters_are_literal(self) -> None:
        self.assertTrue(glob_match("lib/a+b(1).jar", "lib/a+b(1).jar"))
        self.assertFalse(glob_match("lib/a.jar", "lib/aXjar"))


class ClassificationTests(unittest.TestCase):
    def _rule(self, package: str, *include: str, **kwargs) -> ClassificationRule:
        return ClassificationRule(module="core", package=package, include=tuple(include), **kwargs)

    def test_paths_are_grouped_per_package(self) -> None:
        rules = [
            self._rule("core-api", "org/acme/core/*.class"),
            self._rule("core-impl", "org/acme/core/impl/**", exclude=("**/*Test.class",)),
        ]
        paths = [
            "org/acme/core/impl/Impl.class",
            "org/acme/core/Api.class",
            "org/acme/core/impl/ImplTest.class",
            "META-INF/notes.txt",
        ]

        result = classify_paths("core", paths, rules)

        self.assertEqual(result.packages, {"core-api": ["org/acme/core/Api.class"], "core-impl": ["org/acme/core/impl/Impl.class"]})
        self.assertEqual(result.unclassified, ["META-INF/notes.txt", "org/acme/core/impl/ImplTest.class"])
        self.assertEqual(result.conflicts, {})
        result.ensure_no_conflicts()

    def test_overlap_without_flag_is_a_conflict(self) -> None:
        rules = [
            self._rule("ldap-server", "org/acme/ldap/**"),
            self._rule("ldap-shared", "org/acme/ldap/shared/**"),
        ]

        result = classify_paths("ldap", ["org/acme/ldap/shared/Dn.class", "org/acme/ldap/Server.class"], rules)

        self.assertEqual(result.conflicts, {"org/acme/ldap/shared/Dn.class": ["ldap-server", "ldap-shared"]})
        with self.assertRaises(ClassificationConflictError) as ctx:
            result.ensure_no_conflicts()
        self.assertEqual(ctx.exception.details(), ["org/acme/ldap/shared/Dn.class: ldap-server, ldap-shared"])

    def test_overlap_needs_the_flag_on_every_claiming_rule(self) -> None:
        paths = ["org/acme/ldap/shared/Dn.class"]
        both = [
            self._rule("ldap-server", "org/acme/ldap/**", allow_overlap=True),
            self._rule("ldap-client", "org/acme/ldap/shared/**", allow_overlap=True),
        ]
        one = [
            self._rule("ldap-server", "org/acme/ldap/**", allow_overlap=True),
            self._rule("ldap-client", "org/acme/ldap/shared/**"),
        ]

        shared = classify_paths("ldap", paths, both)
        self.assertEqual(shared.conflicts, {})
        self.assertEqual(shared.packages["ldap-server"], paths)
        self.assertEqual(shared.packages["ldap-client"], paths)
        self.assertIn(paths[0], classify_paths("ldap", paths, one).conflicts)

    def test_two_rules_for_one_package_do_not_conflict(self) -> None:
        rules = [self._rule("core", "org/**"), self._rule("core", "**/*.class")]

        result = classify_paths("core", ["org/Api.class"], rules)

        self.assertEqual(result.packages, {"core": ["org/Api.class"]})
        self.assertEqual(result.conflicts, {})

    def test_rules_sorted_by_priority_then_declaration(self) -> None:
        rules = [
            self._rule("low", "**", order=0),
            self._rule("high", "**", priority=10, order=1),
            self._rule("also-low", "**", order=2),
        ]

        self.assertEqual([rule.package for rule in sort_rules(rules)], ["high", "low", "also-low"])
        result = classify_paths("core", ["a.class"], rules)
        self.assertEqual(result.conflicts["a.class"], ["high", "low", "also-low"])

    def test_no_path_in_two_packages_without_overlap_flag(self) -> None:
        rng = random.Random(20240611)
        directories = ["org/acme/core", "org/acme/core/impl", "org/acme/ldap/server", "org/acme/ldap/shared", "web"]
        names = ["Api.class", "Impl.class", "index.html", "messages.properties", "Dn.class"]
        globs = [
            "**",
            "**/*.class",
            "org/**",
            "org/acme/core/**",
            "org/acme/ldap/*/*.class",
            "**/shared/**",
            "web/*",
            "**/*.properties",
            "org/acme/core/[A-I]*.class",
        ]
        for _ in range(200):
            paths = {f"{rng.choice(directories)}/{rng.choice(names)}" for _ in range(rng.randint(1, 12))}
            rules = [
                ClassificationRule(
                    module="m",
                    package=f"pkg{rng.randint(0, 3)}",
                    include=tuple(rng.sample(globs, rng.randint(1, 2))),
                    exclude=tuple(rng.sample(globs, rng.randint(0, 1))),
                    priority=rng.randint(0, 2),
                    allow_overlap=rng.random() < 0.3,
                    order=index,
                )
                for index in range(rng.randint(1, 5))
            ]

            result = classify_paths("m", paths, rules)

            owners: dict[str, list[str]] = {}
            for package, members in result.packages.items():
                self.assertEqual(members, sorted(members))
                for path in members:
                    owners.setdefault(path, []).append(package)
            for path in sorted(paths):
                claimants = [rule for rule in rules if rule.matches(path)]
                if len(owners.get(path, [])) > 1 and not all(rule.allow_overlap for rule in claimants):
                    self.assertIn(path, result.conflicts)
                if path in result.conflicts:
                    with self.assertRaises(ClassificationConflictError):
                        result.ensure_no_conflicts()
                self.assertEqual(path in result.unclassified, not claimants)

    def test_classify_walks_the_unit_directory(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            unit = Path(temp) / "classes"
            (unit / "org" / "acme").mkdir(parents=True)
            (unit / "org" / "acme" / "Api.class").write_bytes(b"\xca\xfe")
            (unit / "README.txt").write_text("notes")

            result = classify(unit, [self._rule("core", "org/**")])

            self.assertEqual(result.module, "core")
            self.assertEqual(result.packages, {"core": ["org/acme/Api.class"]})
            self.assertEqual(result.unclassified, ["README.txt"])
            with self.assertRaises(FileNotFoundError):
                classify(Path(temp) / "missing", [])

    def test_result_mapping_round_trip(self) -> None:
        result = ClassificationResult(
            module="core",
            packages={"core": ["a.class"]},
            unclassified=["b.txt"],
            conflicts={"c.class": ["x", "y"]},
        )

        self.assertEqual(ClassificationResult.from_mapping(result.to_mapping()), result)


class RuleExpansionTests(unittest.TestCase):
    def test_for_each_yields_one_rule_per_item(self) -> None:
        entries = [
            {
                "for_each": ["ldap", "saml"],
                "package": "{{item}}-server",
                "include": ["org/acme/ext/{{item}}/server/**"],
                "destination": "extensions/{{item}}/{{item}}-server.jar",
            },
            {"package": "{{module.name}}-shared", "include": "org/acme/ext/*/shared/**", "allow_overlap": True},
        ]

        rules = expand_rules("ext", entries, {"module": {"name": "ext"}})

        self.assertEqual([rule.package for rule in rules], ["ldap-server", "saml-server", "ext-shared"])
        self.assertEqual(rules[1].include, ("org/acme/ext/saml/server/**",))
        self.assertEqual(rules[0].destination, "extensions/ldap/ldap-server.jar")
        self.assertEqual([rule.order for rule in rules], [0, 1, 2])
        self.assertTrue(rules[2].allow_overlap)
        self.assertEqual(rules[2].include, ("org/acme/ext/*/shared/**",))

    def test_invalid_entries_are_configuration_errors(self) -> None:
        with self.assertRaises(ConfigurationError):
            expand_rules("core", [{"include": ["**"]}])
        with self.assertRaises(ConfigurationError):
            expand_rules("core", [{"package": "core"}])
        with self.assertRaises(ConfigurationError):
            expand_rules("core", [{"package": "{{unknown.value}}", "include": ["**"]}])
        with self.assertRaises(ConfigurationError):
            expand_rules("core", [{"package": "core", "include": ["**"], "priority": "high"}])


if __name__ == "__main__":
    unittest.main()
