"""Split a compiled unit into named packages using a glob rule table."""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple
import re

from core.archive import iter_tree
from core.config_loader import normalize_bool, normalize_int, normalize_string_list
from core.template import TemplateError, TemplateResolver

from .errors import ClassificationConflictError, ConfigurationError


@lru_cache(maxsize=1024)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Translate a path glob into a regular expression.

    ``**`` as a whole segment spans zero or more directories, ``*`` and ``?``
    never cross ``/``, and ``[...]`` is a character class (``[!...]`` negates).
    """

    while pattern.startswith("./"):
        pattern = pattern[2:]
    parts: List[str] = []
    index = 0
    length = len(pattern)
    while index < length:
        char = pattern[index]
        if char == "*":
            end = index
            while end < length and pattern[end] == "*":
                end += 1
            whole_segment = (index == 0 or pattern[index - 1] == "/") and (end == length or pattern[end] == "/")
            if end - index >= 2 and whole_segment:
                if end < length:
                    parts.append("(?:[^/]+/)*")
                    end += 1
                else:
                    parts.append(".*")
            else:
                parts.append("[^/]*")
            index = end
            continue
        if char == "?":
            parts.append("[^/]")
        elif char == "[":
            start = index + 1
            if pattern[start : start + 1] == "!":
                start += 1
            if pattern[start : start + 1] == "]":
                start += 1
            close = pattern.find("]", start)
            if close == -1:
                parts.append(re.escape(char))
            else:
                body = pattern[index + 1 : close]
                negate = body.startswith("!")
                if negate:
                    body = body[1:]
                # Literal inside the class, as fnmatch treats them.
                body = re.sub(r"([\\\[\]^&~|])", r"\\\1", body)
                parts.append(("[^/" if negate else "[") + body + "]")
                index = close + 1
                continue
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("".join(parts))


def glob_match(pattern: str, path: str) -> bool:
    return compile_glob(pattern).fullmatch(path) is not None


def match_any(patterns: Iterable[str], path: str) -> bool:
    return any(glob_match(pattern, path) for pattern in patterns)


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    module: str
    package: str
    include: Tuple[str, ...]
    exclude: Tuple[str, ...] = ()
    priority: int = 0
    allow_overlap: bool = False
    order: int = 0
    destination: str | None = None
    main_class: str | None = None
    class_path: Tuple[str, ...] = ()

    def matches(self, path: str) -> bool:
        return match_any(self.include, path) and not match_any(self.exclude, path)


def sort_rules(rules: Iterable[ClassificationRule]) -> List[ClassificationRule]:
    """Descending priority, then declaration order."""

    return sorted(rules, key=lambda rule: (-rule.priority, rule.order))


def expand_rules(
    module: str,
    entries: Sequence[Mapping[str, Any]],
    context: Mapping[str, Any] | None = None,
) -> List[ClassificationRule]:
    """Build rules from table entries, expanding ``for_each`` lists.

    Each item of ``for_each`` yields one rule with ``{{item}}`` substituted in
    every string of the entry.
    """

    rules: List[ClassificationRule] = []
    base_context: Dict[str, Any] = dict(context or {})
    for position, entry in enumerate(entries, start=1):
        where = f"Module '{module}' rule #{position}"
        try:
            items = normalize_string_list(entry.get("for_each"), field_name="for_each")
        except TypeError as exc:
            raise ConfigurationError(f"{where}: {exc}") from exc
        body = {key: value for key, value in entry.items() if key != "for_each"}
        for item in items or [None]:
            rule_context = dict(base_context)
            if item is not None:
                rule_context["item"] = item
            try:
                resolved = TemplateResolver(rule_context).resolve(body)
                rules.append(_rule_from_mapping(module, resolved, order=len(rules)))
            except (TemplateError, TypeError, ValueError) as exc:
                if isinstance(exc, ConfigurationError):
                    raise
                raise ConfigurationError(f"{where}: {exc}") from exc
    return rules


def _rule_from_mapping(module: str, data: Mapping[str, Any], *, order: int) -> ClassificationRule:
    package = str(data.get("package") or "").strip()
    if not package:
        raise ConfigurationError(f"Module '{module}': classification rules need a 'package'")
    include = normalize_string_list(data.get("include"), field_name="include")
    if not include:
        raise ConfigurationError(f"Module '{module}': rule for package '{package}' has no include globs")
    destination = data.get("destination")
    main_class = data.get("main_class")
    return ClassificationRule(
        module=module,
        package=package,
        include=tuple(include),
        exclude=tuple(normalize_string_list(data.get("exclude"), field_name="exclude")),
        priority=normalize_int(data.get("priority"), field_name="priority", default=0),
        allow_overlap=normalize_bool(data.get("allow_overlap"), field_name="allow_overlap"),
        order=order,
        destination=str(destination).strip() if destination else None,
        main_class=str(main_class).strip() if main_class else None,
        class_path=tuple(normalize_string_list(data.get("class_path"), field_name="class_path")),
    )


@dataclass(slots=True)
class ClassificationResult:
    module: str
    packages: Dict[str, List[str]] = field(default_factory=dict)
    unclassified: List[str] = field(default_factory=list)
    conflicts: Dict[str, List[str]] = field(default_factory=dict)

    def ensure_no_conflicts(self) -> None:
        if self.conflicts:
            raise ClassificationConflictError(self.module, self.conflicts)

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "module": self.module,
            "packages": {name: list(paths) for name, paths in self.packages.items()},
            "unclassified": list(self.unclassified),
            "conflicts": {path: list(names) for path, names in self.conflicts.items()},
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ClassificationResult":
        return cls(
            module=str(data.get("module", "")),
            packages={str(name): [str(path) for path in paths] for name, paths in data.get("packages", {}).items()},
            unclassified=[str(path) for path in data.get("unclassified", [])],
            conflicts={str(path): [str(name) for name in names] for path, names in data.get("conflicts", {}).items()},
        )


def list_unit_files(unit_dir: Path) -> List[str]:
    return [relative for _, relative, is_dir in iter_tree(unit_dir) if not is_dir]


def classify_paths(module: str, paths: Iterable[str], rules: Iterable[ClassificationRule]) -> ClassificationResult:
    ordered = sort_rules(rules)
    result = ClassificationResult(module=module)
    for rule in ordered:
        result.packages.setdefault(rule.package, [])

    for path in sorted(set(paths)):
        claimants = [rule for rule in ordered if rule.matches(path)]
        if not claimants:
            result.unclassified.append(path)
            continue
        names: List[str] = []
        for rule in claimants:
            if rule.package not in names:
                names.append(rule.package)
                result.packages[rule.package].append(path)
        if len(names) > 1 and not all(rule.allow_overlap for rule in claimants):
            result.conflicts[path] = names

    result.packages = {name: paths for name, paths in result.packages.items() if paths}
    return result


def classify(unit_dir: Path, rules: Iterable[ClassificationRule], *, module: str | None = None) -> ClassificationResult:
    """Classify every file below *unit_dir*; conflicts are recorded, not raised."""

    rules = list(rules)
    owner = module or (rules[0].module if rules else unit_dir.name)
    if not unit_dir.is_dir():
        raise FileNotFoundError(f"Compiled unit '{unit_dir}' does not exist")
    return classify_paths(owner, list_unit_files(unit_dir), rules)


__all__ = [
    "ClassificationResult",
    "ClassificationRule",
    "classify",
    "classify_paths",
    "compile_glob",
    "expand_rules",
    "glob_match",
    "list_unit_files",
    "match_any",
    "sort_rules",
]
