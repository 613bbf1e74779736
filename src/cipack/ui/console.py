"""Console output formatting utilities for cipack."""

from __future__ import annotations

import sys
import threading
from typing import List, Optional


class Console:
    """Centralized console output formatting. Safe to call from job threads."""

    def __init__(self, debug: bool = False, show_output: bool = True):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_output: If False, unit stdout/stderr is not echoed
        """
        self.debug = debug
        self.show_output = show_output
        # re-entrant: a signal handler on the main thread may print while it holds the lock
        self._lock = threading.RLock()

    def _print(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)
            stream.flush()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        job_count: int,
        level_count: int,
    ) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Run ID: {run_id}",
            f"Jobs: {job_count}",
            f"Levels: {level_count}",
            "",
        )

    def print_level(self, index: int, jobs: List[str]) -> None:
        """Print the jobs about to run concurrently."""
        self._print(f"=== Level {index}: {', '.join(jobs)} ===")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._print(f"JOB STARTED: {name}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._print(f"JOB SKIPPED: {name} ({reason})")

    def print_job_result(self, name: str, status: str, duration: Optional[float] = None) -> None:
        timing = f" in {duration:.1f}s" if duration is not None else ""
        self._print(f"JOB {status.upper()}: {name}{timing}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._print(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, condition: str) -> None:
        self._print(f"[{job}] STEP SKIPPED: {name} (condition: {condition})")

    def print_output(self, job: str, step: str, line: str) -> None:
        """Echo one line of unit output."""
        if self.show_output:
            self._print(f"[{job}/{step}] {line}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._print(*lines)

    def print_artifact(self, action: str, name: str, path: str) -> None:
        self._print(f"ARTIFACT {action}: {name} ({path})")

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the level-by-level execution plan."""
        for idx, level in enumerate(levels):
            self._print(f"Level {idx}:")
            for name in level:
                self._print(f"  {name}")

    def print_results(self, results: dict[str, str]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {status.upper()}")
        self._print(*lines)

    def print_cleanup(self, executors: List[str], errors: int = 0) -> None:
        """Confirm workspace teardown, even after cancellation."""
        names = ", ".join(executors) or "none"
        suffix = f" ({errors} error(s), see log)" if errors else ""
        self._print(f"CLEANUP COMPLETE: {names}{suffix}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in (details or []))
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
