"""Static catalog of modules and their upstream relations."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping

from core.template import CycleDetected, topological_order

from .config_loader import ModuleDefinition
from .errors import ConfigurationError, CycleError


@dataclass(slots=True)
class ModuleRegistry:
    modules: Dict[str, ModuleDefinition] = field(default_factory=dict)

    @classmethod
    def from_definitions(cls, definitions: Iterable[ModuleDefinition] | Mapping[str, ModuleDefinition]) -> "ModuleRegistry":
        items = definitions.values() if isinstance(definitions, Mapping) else definitions
        registry = cls()
        for definition in items:
            registry.add(definition)
        registry.validate()
        return registry

    def add(self, definition: ModuleDefinition) -> None:
        if definition.name in self.modules:
            raise ConfigurationError(f"Module '{definition.name}' is already registered")
        self.modules[definition.name] = definition

    def validate(self) -> None:
        """Reject unknown upstream names and cyclic module dependencies."""

        for name, definition in sorted(self.modules.items()):
            for upstream in definition.depends_on:
                if upstream == name:
                    raise CycleError([name, name])
                if upstream not in self.modules:
                    available = ", ".join(sorted(self.modules)) or "<none>"
                    raise ConfigurationError(
                        f"Module '{name}' depends on unknown module '{upstream}'. Available modules: {available}"
                    )
        self.build_order()

    def __contains__(self, name: object) -> bool:
        return name in self.modules

    def __iter__(self) -> Iterator[ModuleDefinition]:
        for name in self.build_order():
            yield self.modules[name]

    def __len__(self) -> int:
        return len(self.modules)

    def get(self, name: str) -> ModuleDefinition:
        if name not in self.modules:
            available = ", ".join(sorted(self.modules)) or "<none>"
            raise KeyError(f"Module '{name}' not found. Available modules: {available}")
        return self.modules[name]

    def names(self) -> List[str]:
        return sorted(self.modules)

    def upstream(self, name: str) -> List[str]:
        return list(self.get(name).depends_on)

    def upstream_closure(self, name: str) -> List[str]:
        """Transitive upstream modules of *name*, nearest first, each listed once."""

        seen = {name}
        order: List[str] = []
        queue = deque(self.get(name).depends_on)
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            queue.extend(self.get(current).depends_on)
        return order

    def downstream(self, name: str) -> List[str]:
        return sorted(other for other, definition in self.modules.items() if name in definition.depends_on)

    def build_order(self, selection: Iterable[str] | None = None) -> List[str]:
        """Modules in dependency order; with *selection*, only those and their upstreams."""

        if selection is None:
            wanted = set(self.modules)
        else:
            wanted = set()
            for name in selection:
                self.get(name)
                wanted.add(name)
                wanted.update(self.upstream_closure(name))
        dependency_map = {name: list(self.modules[name].depends_on) for name in wanted}
        try:
            return topological_order(dependency_map)
        except CycleDetected as exc:
            raise CycleError(exc.cycle) from exc


__all__ = ["ModuleRegistry"]
