"""Exception hierarchy shared by every stage of the build."""
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List, Mapping, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .graph import BuildReport


class DistbuildError(Exception):
    """Base class for all errors raised by distbuild."""

    def details(self) -> List[str]:
        """Extra lines printed below the message by the CLI."""
        return []


class ConfigurationError(DistbuildError, ValueError):
    """Invalid configuration detected before any task runs."""


class DuplicateTaskError(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f"Task '{name}' is already registered")
        self.name = name


class OutputCollisionError(ConfigurationError):
    def __init__(self, path: str, first: str, second: str):
        super().__init__(f"Output '{path}' is declared by both '{first}' and '{second}'")
        self.path = path
        self.tasks = (first, second)


class CycleError(ConfigurationError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        if self.cycle:
            message = f"Dependency cycle: {' -> '.join(self.cycle)}"
        else:
            message = "Dependency cycle detected"
        super().__init__(message)


class ClassificationConflictError(DistbuildError):
    """A compiled path was claimed by several packages without the overlap flag."""

    def __init__(self, module: str, conflicts: Mapping[str, Sequence[str]]):
        self.module = module
        self.conflicts = {path: list(packages) for path, packages in sorted(conflicts.items())}
        count = len(self.conflicts)
        super().__init__(f"Module '{module}': {count} path(s) classified into more than one package")

    def details(self) -> List[str]:
        return [f"{path}: {', '.join(packages)}" for path, packages in self.conflicts.items()]


class TaskExecutionError(DistbuildError):
    """Wraps the failure of a task action; the original exception is ``__cause__``."""

    def __init__(self, task: str, cause: BaseException):
        super().__init__(f"Task '{task}' failed: {cause}")
        self.task = task
        self.cause = cause

    def details(self) -> List[str]:
        if isinstance(self.cause, DistbuildError):
            return self.cause.details()
        return []


class ValidationError(DistbuildError):
    """Aggregate of every entry missing from a staging tree."""

    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(f"Distribution validation failed: {len(self.missing)} missing entr{'y' if len(self.missing) == 1 else 'ies'}")

    def details(self) -> List[str]:
        return [f"missing: {entry}" for entry in self.missing]


class CompileError(DistbuildError):
    pass


class AssemblyError(DistbuildError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Staging failed at '{path}': {reason}")
        self.path = path


class DuplicateEntryError(AssemblyError):
    def __init__(self, path: str, first_source: str, second_source: str):
        super().__init__(path, f"already staged from '{first_source}', duplicate from '{second_source}'")
        self.sources = (first_source, second_source)


class DependencyConflictError(DistbuildError):
    def __init__(self, filename: str, first: str, second: str):
        super().__init__(f"Library '{filename}' differs between '{first}' and '{second}'")
        self.filename = filename
        self.sources = (first, second)


class SigningError(DistbuildError):
    pass


class BuildFailure(DistbuildError):
    """Raised by the engine when an execution report contains a failure."""

    def __init__(self, report: "BuildReport"):
        self.report = report
        failure = report.failure
        message = str(failure) if failure is not None else "Build failed"
        super().__init__(message)

    def details(self) -> List[str]:
        lines: List[str] = []
        if self.report.failure is not None:
            lines.extend(self.report.failure.details())
        lines.append(self.report.summary())
        if self.report.blocked:
            lines.append(f"blocked: {', '.join(self.report.blocked)}")
        return lines


__all__ = [
    "AssemblyError",
    "BuildFailure",
    "ClassificationConflictError",
    "CompileError",
    "ConfigurationError",
    "CycleError",
    "DependencyConflictError",
    "DistbuildError",
    "DuplicateEntryError",
    "DuplicateTaskError",
    "OutputCollisionError",
    "SigningError",
    "TaskExecutionError",
    "ValidationError",
]
