"""Console output formatting utilities for releaseci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors are printed
        """
        self.debug = debug
        self.quiet = quiet
        # jobs of one wave report from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        if self.quiet and not err:
            return
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        event: str,
        ref: str,
        group: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Event: {event}",
            f"Ref: {ref or '-'}",
            f"Concurrency group: {group}",
            f"Jobs: {job_count}",
            "",
        )

    def print_run_cancelled(self, run_id: str, reason: str) -> None:
        self._out(f"\nRUN CANCELLED: {run_id} ({reason})")

    def print_wave(self, index: int, names: Iterable[str]) -> None:
        self._out(f"=== Wave {index + 1}: {', '.join(names)} ===")

    def print_job_start(self, name: str, mode: Optional[str] = None) -> None:
        """Print job start message."""
        suffix = f" ({mode})" if mode else ""
        self._out(f"JOB STARTED: {name}{suffix}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._out(f"[{name}] STATUS: success")

    def print_failure(self, name: str, reason: str, exit_code: Optional[int] = None) -> None:
        """
        Print failure message.

        Args:
            name: Job name
            reason: Failure reason/error message
            exit_code: Optional exit code
        """
        lines = [f"JOB FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_job_cancelled(self, name: str) -> None:
        self._out(f"JOB CANCELLED: {name}")

    def print_plan_wave(self, index: int, entries: Iterable[tuple[str, Optional[str]]]) -> None:
        """Print one wave of a plan; entries are (job, skip reason or None)."""
        self._out(f"Wave {index + 1}:")
        for name, skip in entries:
            if skip:
                self._out(f"  {name} (skipped: {skip})")
            else:
                self._out(f"  {name}")

    def print_results(self, result) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, state in result.jobs.items():
            status_display = state.value.upper()
            mode = result.publish_modes.get(job)
            if mode:
                status_display += f" [{mode}]"
            lines.append(f"  {job}: {status_display}")
        for name, loc in result.artifacts.items():
            lines.append(f"  artifact {name}: {loc.uri}")
        lines.append(f"OUTCOME: {result.outcome.value.upper()}")
        self._out(*lines)

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
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            self._out("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
