"""Task dependency graph with fingerprint-based skipping and a bounded worker pool."""
from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Protocol, Sequence, Tuple
import json
import os
import threading

from cryptography.hazmat.primitives import hashes

from core.template import CycleDetected, topological_order

from .errors import (
    ConfigurationError,
    CycleError,
    DistbuildError,
    DuplicateTaskError,
    OutputCollisionError,
    TaskExecutionError,
)


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def completed(self) -> bool:
        """Finished in a way that satisfies dependents."""

        return self in (TaskState.SUCCEEDED, TaskState.SKIPPED)


_TERMINAL_STATES = frozenset({TaskState.SUCCEEDED, TaskState.SKIPPED, TaskState.FAILED, TaskState.BLOCKED})


@dataclass(frozen=True, slots=True)
class Task:
    """A named unit of work.

    ``depends_on`` are hard prerequisites. Tasks named in ``finalized_by`` run
    after this one finishes, whether it succeeded or failed. A task that
    declares both ``inputs`` and ``outputs`` is skipped when their fingerprint
    matches the one recorded after its last successful run; ``signature``
    folds non-file inputs (versions, rule tables) into that fingerprint.
    """

    name: str
    action: Callable[[], None] | None = None
    depends_on: Tuple[str, ...] = ()
    finalized_by: Tuple[str, ...] = ()
    inputs: Tuple[Path, ...] = ()
    outputs: Tuple[Path, ...] = ()
    description: str = ""
    signature: str = ""

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ConfigurationError("Task names cannot be empty")
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        object.__setattr__(self, "finalized_by", tuple(self.finalized_by))
        object.__setattr__(self, "inputs", tuple(Path(path) for path in self.inputs))
        object.__setattr__(self, "outputs", tuple(Path(path) for path in self.outputs))

    @property
    def cacheable(self) -> bool:
        return bool(self.inputs) and bool(self.outputs)


def _iter_fingerprint_entries(root: Path) -> Iterator[Tuple[str, int, int]]:
    if not root.exists():
        return
    if root.is_file():
        stat = root.stat()
        yield "", stat.st_size, stat.st_mtime_ns
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        current = Path(dirpath)
        for filename in sorted(filenames):
            path = current / filename
            stat = path.stat()
            yield path.relative_to(root).as_posix(), stat.st_size, stat.st_mtime_ns


def compute_fingerprint(task: Task) -> str:
    """SHA-256 over path, size and mtime of every file below the declared paths."""

    hasher = hashes.Hash(hashes.SHA256())
    hasher.update(f"signature\0{task.signature}\n".encode("utf-8"))
    for label, paths in (("in", task.inputs), ("out", task.outputs)):
        for declared in sorted(paths, key=lambda item: item.as_posix()):
            marker = "present" if declared.exists() else "missing"
            hasher.update(f"{label}\0{declared.as_posix()}\0{marker}\n".encode("utf-8"))
            for relative, size, mtime_ns in _iter_fingerprint_entries(declared):
                hasher.update(f"{relative}\0{size}\0{mtime_ns}\n".encode("utf-8", "surrogateescape"))
    return hasher.finalize().hex()


class TaskStateStore:
    """Fingerprints of the last successful run per task, optionally persisted as JSON."""

    def __init__(self, path: Path | None = None, records: Mapping[str, str] | None = None):
        self.path = path
        self._records: Dict[str, str] = dict(records or {})
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: Path) -> "TaskStateStore":
        records: Dict[str, str] = {}
        if path.is_file():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                # An unreadable cache only costs a rebuild.
                data = {}
            if isinstance(data, dict):
                records = {str(key): str(value) for key, value in data.get("tasks", {}).items()}
        return cls(path, records)

    def get(self, name: str) -> str | None:
        with self._lock:
            return self._records.get(name)

    def put(self, name: str, fingerprint: str) -> None:
        with self._lock:
            self._records[name] = fingerprint

    def drop(self, name: str) -> None:
        with self._lock:
            self._records.pop(name, None)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._records)

    def save(self) -> None:
        if self.path is None:
            return
        payload = {"version": 1, "tasks": dict(sorted(self.snapshot().items()))}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + ".tmp")
        temp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        os.replace(temp_path, self.path)


class TaskListener(Protocol):
    def task_started(self, task: Task) -> None:
        ...

    def task_finished(self, task: Task, state: TaskState, error: DistbuildError | None) -> None:
        ...


@dataclass(slots=True)
class ExecutionPlan:
    targets: List[str]
    order: List[str]
    tasks: Dict[str, Task]

    def __iter__(self) -> Iterator[Task]:
        for name in self.order:
            yield self.tasks[name]

    def __len__(self) -> int:
        return len(self.order)

    def __contains__(self, name: object) -> bool:
        return name in self.tasks

    def describe(self) -> List[str]:
        lines: List[str] = []
        for index, task in enumerate(self, start=1):
            line = f"{index:3d}. {task.name}"
            if task.description:
                line = f"{line}  ({task.description})"
            lines.append(line)
        return lines


@dataclass(slots=True)
class BuildReport:
    order: List[str] = field(default_factory=list)
    states: Dict[str, TaskState] = field(default_factory=dict)
    failures: List[TaskExecutionError] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)

    def _names_in(self, state: TaskState) -> List[str]:
        return [name for name in self.order if self.states.get(name) is state]

    @property
    def succeeded(self) -> List[str]:
        return self._names_in(TaskState.SUCCEEDED)

    @property
    def skipped(self) -> List[str]:
        return self._names_in(TaskState.SKIPPED)

    @property
    def failed(self) -> List[str]:
        return self._names_in(TaskState.FAILED)

    @property
    def failure(self) -> TaskExecutionError | None:
        return self.failures[0] if self.failures else None

    @property
    def ok(self) -> bool:
        return not self.failures and not self.blocked

    def summary(self) -> str:
        return (
            f"{len(self.succeeded)} succeeded, {len(self.skipped)} up-to-date, "
            f"{len(self.failed)} failed, {len(self.blocked)} blocked"
        )


def _paths_overlap(first: Path, second: Path) -> bool:
    return first == second or first.is_relative_to(second) or second.is_relative_to(first)


class TaskGraph:
    """Registry of tasks plus planning and parallel execution."""

    def __init__(
        self,
        *,
        workers: int = 1,
        state_store: TaskStateStore | None = None,
        listeners: Iterable[TaskListener] = (),
    ):
        if workers < 1:
            raise ConfigurationError("workers must be at least 1")
        self.workers = workers
        self.state_store = state_store or TaskStateStore()
        self.listeners: List[TaskListener] = list(listeners)
        self._tasks: Dict[str, Task] = {}
        self._outputs: List[Tuple[Path, str]] = []

    @property
    def tasks(self) -> Mapping[str, Task]:
        return self._tasks

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def get(self, name: str) -> Task:
        if name not in self._tasks:
            raise ConfigurationError(f"Unknown task '{name}'")
        return self._tasks[name]

    def register(self, task: Task) -> Task:
        if task.name in self._tasks:
            raise DuplicateTaskError(task.name)
        normalized = [Path(os.path.abspath(path)) for path in task.outputs]
        for output in normalized:
            for existing, owner in self._outputs:
                if _paths_overlap(output, existing):
                    raise OutputCollisionError(str(output), owner, task.name)
        self._tasks[task.name] = task
        self._outputs.extend((output, task.name) for output in normalized)
        return task

    def plan(self, targets: Sequence[str]) -> ExecutionPlan:
        """Minimal closure of *targets* in deterministic dependency order."""

        if not targets:
            raise ConfigurationError("At least one target task is required")
        for target in targets:
            if target not in self._tasks:
                available = ", ".join(sorted(self._tasks)) or "<none>"
                raise ConfigurationError(f"Unknown target '{target}'. Available tasks: {available}")

        closure: Dict[str, Task] = {}
        stack = list(targets)
        while stack:
            name = stack.pop()
            if name in closure:
                continue
            task = self._tasks[name]
            closure[name] = task
            for edge_kind, related in (("depends on", task.depends_on), ("is finalized by", task.finalized_by)):
                for other in related:
                    if other not in self._tasks:
                        raise ConfigurationError(f"Task '{name}' {edge_kind} unknown task '{other}'")
                    stack.append(other)

        dependency_map: Dict[str, List[str]] = {name: list(task.depends_on) for name, task in closure.items()}
        for name, task in closure.items():
            for finalizer in task.finalized_by:
                dependency_map[finalizer].append(name)

        try:
            order = topological_order(dependency_map)
        except CycleDetected as exc:
            raise CycleError(exc.cycle) from exc

        return ExecutionPlan(targets=list(targets), order=order, tasks=closure)

    def execute(self, plan: ExecutionPlan, *, force: bool = False) -> BuildReport:
        """Run *plan*; failures block their dependents and are collected in the report."""

        report = BuildReport(order=list(plan.order))
        states: Dict[str, TaskState] = {name: TaskState.PENDING for name in plan.order}
        report.states = states

        owners: Dict[str, List[str]] = {name: [] for name in plan.order}
        for task in plan:
            for finalizer in task.finalized_by:
                owners[finalizer].append(task.name)

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="distbuild") as executor:
            running: Dict[Future[TaskState], str] = {}
            while True:
                changed = True
                while changed:
                    changed = False
                    for task in plan:
                        if states[task.name] is not TaskState.PENDING:
                            continue
                        dependency_states = [states[name] for name in task.depends_on]
                        owner_states = [states[name] for name in owners[task.name]]
                        if any(state in (TaskState.FAILED, TaskState.BLOCKED) for state in dependency_states) or (
                            owner_states and all(state is TaskState.BLOCKED for state in owner_states)
                        ):
                            states[task.name] = TaskState.BLOCKED
                            report.blocked.append(task.name)
                            changed = True
                            continue
                        if all(state.completed for state in dependency_states) and all(
                            state.terminal for state in owner_states
                        ):
                            states[task.name] = TaskState.RUNNING
                            self._notify_started(task)
                            running[executor.submit(self._run_task, task, force)] = task.name

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda item: running[item]):
                    name = running.pop(future)
                    task = plan.tasks[name]
                    error: TaskExecutionError | None = None
                    try:
                        state = future.result()
                    except Exception as exc:
                        error = TaskExecutionError(name, exc)
                        error.__cause__ = exc
                        report.failures.append(error)
                        state = TaskState.FAILED
                    states[name] = state
                    self._notify_finished(task, state, error)

        self.state_store.save()
        return report

    def run(self, targets: Sequence[str], *, force: bool = False) -> BuildReport:
        return self.execute(self.plan(targets), force=force)

    def is_up_to_date(self, task: Task) -> bool:
        if not task.cacheable:
            return False
        if not all(path.exists() for path in task.outputs):
            return False
        recorded = self.state_store.get(task.name)
        return recorded is not None and recorded == compute_fingerprint(task)

    def _run_task(self, task: Task, force: bool) -> TaskState:
        if not force and self.is_up_to_date(task):
            return TaskState.SKIPPED
        self.state_store.drop(task.name)
        if task.action is not None:
            task.action()
        if task.cacheable:
            self.state_store.put(task.name, compute_fingerprint(task))
        return TaskState.SUCCEEDED

    def _notify_started(self, task: Task) -> None:
        for listener in self.listeners:
            listener.task_started(task)

    def _notify_finished(self, task: Task, state: TaskState, error: DistbuildError | None) -> None:
        for listener in self.listeners:
            listener.task_finished(task, state, error)


class ConsoleTaskListener:
    """Reports task progress through a :class:`~distbuild.console.Console`."""

    def __init__(self, console) -> None:
        self.console = console

    def task_started(self, task: Task) -> None:
        self.console.debug(f"> {task.name}")

    def task_finished(self, task: Task, state: TaskState, error: DistbuildError | None) -> None:
        if state is TaskState.SKIPPED:
            self.console.info(f"{task.name} UP-TO-DATE")
        elif state is TaskState.FAILED:
            self.console.error(f"{task.name} FAILED: {error.cause if error else 'unknown error'}")
        else:
            self.console.info(task.name)


__all__ = [
    "BuildReport",
    "ConsoleTaskListener",
    "ExecutionPlan",
    "Task",
    "TaskGraph",
    "TaskListener",
    "TaskState",
    "TaskStateStore",
    "compute_fingerprint",
]
