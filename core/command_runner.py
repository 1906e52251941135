"""Execute external commands, or record them when running dry."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence
import os
import shlex
import subprocess
import threading


@dataclass
class CommandResult:
    """Represents the outcome of an executed command."""

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class CommandError(RuntimeError):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, result: CommandResult):
        message = f"Command failed with exit code {result.returncode}: {format_command(result.command)}"
        if result.output:
            message = f"{message}\n{result.output}"
        super().__init__(message)
        self.result = result


def format_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in command)


class CommandRunner:
    """Abstract command runner interface."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
    ) -> CommandResult:
        raise NotImplementedError


class SubprocessCommandRunner(CommandRunner):
    """Runs commands with :mod:`subprocess`, capturing their output."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
    ) -> CommandResult:
        merged_env: Dict[str, str] | None = None
        if env:
            merged_env = os.environ.copy()
            merged_env.update(env)

        process = subprocess.run(
            [str(part) for part in command],
            cwd=str(cwd) if cwd else None,
            env=merged_env,
            capture_output=True,
            text=True,
            check=False,
        )
        result = CommandResult(
            command=list(command),
            returncode=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
        )
        if check and result.returncode != 0:
            raise CommandError(result)
        return result


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    env: Dict[str, str] = field(default_factory=dict)
    note: str | None = None


class RecordingCommandRunner(CommandRunner):
    """Records commands instead of executing them; safe to share between worker threads."""

    def __init__(self) -> None:
        self.commands: List[RecordedCommand] = []
        self._lock = threading.Lock()

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
    ) -> CommandResult:
        record = RecordedCommand(
            command=[str(part) for part in command],
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env else {},
            note=note,
        )
        with self._lock:
            self.commands.append(record)
        return CommandResult(command=list(command), returncode=0, stdout="", stderr="")

    def iter_formatted(self) -> Iterable[str]:
        with self._lock:
            records = list(self.commands)
        for record in records:
            parts: List[str] = ["[dry-run]"]
            if record.note:
                parts.append(record.note)
            if record.cwd:
                parts.append(f"(cwd={record.cwd})")
            parts.append(format_command(record.command))
            yield " ".join(parts)


__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "RecordedCommand",
    "RecordingCommandRunner",
    "SubprocessCommandRunner",
    "format_command",
]
