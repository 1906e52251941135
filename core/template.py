"""Placeholder resolution and dependency ordering utilities."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Sequence
import heapq
import re


_PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")
_SINGLE_PLACEHOLDER_PATTERN = re.compile(r"^\s*\{\{([^{}]+)\}\}\s*$")


class TemplateError(ValueError):
    """Raised when a template cannot be resolved."""


class CycleDetected(ValueError):
    """Raised by :func:`topological_order` when the graph is not a DAG."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        if self.cycle:
            message = f"Circular dependency detected: {' -> '.join(self.cycle)}"
        else:
            message = "Circular dependency detected"
        super().__init__(message)


@dataclass(slots=True)
class TemplateResolver:
    """Resolves ``{{dotted.path}}`` placeholders against a nested mapping context.

    A string that consists of a single placeholder resolves to the referenced
    value itself (so lists stay lists); placeholders embedded in longer text
    are stringified. Referenced values are resolved recursively.
    """

    context: Mapping[str, Any]
    _cache: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def resolve(self, value: Any) -> Any:
        return self._resolve_value(value, stack=[])

    def _resolve_value(self, value: Any, *, stack: list[str]) -> Any:
        if isinstance(value, str):
            return self._resolve_string(value, stack=stack)
        if isinstance(value, list):
            return [self._resolve_value(item, stack=list(stack)) for item in value]
        if isinstance(value, tuple):
            return tuple(self._resolve_value(item, stack=list(stack)) for item in value)
        if isinstance(value, dict):
            return {key: self._resolve_value(val, stack=list(stack)) for key, val in value.items()}
        return value

    def _resolve_string(self, value: str, *, stack: list[str]) -> Any:
        single = _SINGLE_PLACEHOLDER_PATTERN.match(value)
        if single:
            return self._resolve_path(single.group(1).strip(), stack=stack)
        if not _PLACEHOLDER_PATTERN.search(value):
            return value

        def replacement(match: re.Match[str]) -> str:
            result = self._resolve_path(match.group(1).strip(), stack=stack)
            if isinstance(result, (list, tuple)):
                return " ".join(str(item) for item in result)
            return str(result)

        return _PLACEHOLDER_PATTERN.sub(replacement, value)

    def _resolve_path(self, path: str, *, stack: list[str]) -> Any:
        if path in self._cache:
            return self._cache[path]
        if path in stack:
            raise TemplateError(f"Circular placeholder reference: {' -> '.join(stack + [path])}")

        raw_value = self._lookup_raw(path)
        stack.append(path)
        resolved = self._resolve_value(raw_value, stack=stack)
        stack.pop()
        self._cache[path] = resolved
        return resolved

    def _lookup_raw(self, path: str) -> Any:
        current: Any = self.context
        for part in path.split("."):
            if isinstance(current, Mapping) and part in current:
                current = current[part]
                continue
            raise TemplateError(f"Cannot resolve path '{path}' in template context")
        return current


def find_cycle(dependency_map: Mapping[str, Sequence[str]]) -> list[str]:
    """Return one cycle as ``[a, b, ..., a]`` or an empty list.

    Iterative depth-first search; deep chains do not hit the recursion limit.
    """

    visited: set[str] = set()
    active: set[str] = set()
    path: list[str] = []

    for start in sorted(dependency_map):
        if start in visited:
            continue
        visited.add(start)
        active.add(start)
        path.append(start)
        stack: list[tuple[str, Iterator[str]]] = [(start, iter(dependency_map.get(start, ())))]
        while stack:
            node, deps = stack[-1]
            for dep in deps:
                if dep not in dependency_map:
                    continue
                if dep in active:
                    return path[path.index(dep):] + [dep]
                if dep not in visited:
                    visited.add(dep)
                    active.add(dep)
                    path.append(dep)
                    stack.append((dep, iter(dependency_map.get(dep, ()))))
                    break
            else:
                stack.pop()
                active.remove(node)
                path.pop()
    return []


def topological_order(dependency_map: Mapping[str, Sequence[str]]) -> list[str]:
    """Order the keys of *dependency_map* so every node follows its dependencies.

    Ties are broken alphabetically so the order is deterministic. Dependencies
    that are not keys of the map are ignored. Raises :class:`CycleDetected`.
    """

    nodes = list(dependency_map.keys())
    dependents: Dict[str, List[str]] = {node: [] for node in nodes}
    indegree: Dict[str, int] = {node: 0 for node in nodes}

    for node, deps in dependency_map.items():
        filtered = {dep for dep in deps if dep in dependency_map}
        indegree[node] = len(filtered)
        for dep in filtered:
            dependents[dep].append(node)

    for dependent_list in dependents.values():
        dependent_list.sort()

    ready = [node for node, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    order: list[str] = []

    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(nodes):
        raise CycleDetected(find_cycle(dependency_map))

    return order


__all__ = [
    "CycleDetected",
    "TemplateError",
    "TemplateResolver",
    "find_cycle",
    "topological_order",
]
