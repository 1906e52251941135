"""Leveled console output shared by the engine and the CLI."""
from __future__ import annotations

from pathlib import Path
from typing import IO, TextIO
import sys
import threading


class Console:
    """Console output handler with a configurable log level.

    Levels: none < error < warn < info < debug. Errors and warnings go to
    stderr, everything else to stdout. When ``log_file`` is set every emitted
    line is mirrored there regardless of the console level.
    """

    LEVELS = {
        "none": 0,
        "error": 1,
        "warn": 2,
        "info": 3,
        "debug": 4,
    }

    def __init__(
        self,
        level: str = "info",
        dry_run: bool = False,
        *,
        log_file: Path | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ):
        if level not in self.LEVELS:
            raise ValueError(f"Unknown log level '{level}'. Choose from: {', '.join(self.LEVELS)}")
        self.level_name = level
        self.level = self.LEVELS[level]
        self.dry_run = dry_run
        self._stdout = stdout
        self._stderr = stderr
        self._lock = threading.Lock()
        self._log_handle: IO[str] | None = None
        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            self._log_handle = log_file.open("a", encoding="utf-8")

    def close(self) -> None:
        with self._lock:
            if self._log_handle is not None:
                self._log_handle.close()
                self._log_handle = None

    def _emit(self, tag: str, message: str, *, threshold: int, error_stream: bool = False) -> None:
        line = f"[{tag}] {message}"
        with self._lock:
            if self._log_handle is not None:
                self._log_handle.write(line + "\n")
                self._log_handle.flush()
            if self.level < threshold:
                return
            stream = (self._stderr or sys.stderr) if error_stream else (self._stdout or sys.stdout)
            print(line, file=stream)

    def error(self, message: str) -> None:
        self._emit("ERROR", message, threshold=self.LEVELS["error"], error_stream=True)

    def warn(self, message: str) -> None:
        self._emit("WARN", message, threshold=self.LEVELS["warn"], error_stream=True)

    def info(self, message: str) -> None:
        self._emit("INFO", message, threshold=self.LEVELS["info"])

    def debug(self, message: str) -> None:
        self._emit("DEBUG", message, threshold=self.LEVELS["debug"])

    def dry(self, message: str) -> None:
        if self.dry_run:
            self._emit("DRY", message, threshold=self.LEVELS["error"])


class SilentConsole(Console):
    """Console that prints nothing; used by library callers and tests."""

    def __init__(self, dry_run: bool = False):
        super().__init__(level="none", dry_run=dry_run)

    def dry(self, message: str) -> None:
        pass


__all__ = ["Console", "SilentConsole"]
