"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step progress lines
        """
        self.debug = debug
        self.quiet = quiet
        # Jobs report progress from worker threads; signal handlers print too
        self._lock = threading.RLock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_run_started(
        self,
        pipeline: str,
        workflow: str,
        event: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Workflow: {workflow}",
            f"Event: {event}",
            f"Jobs: {job_count}",
            "",
        )

    def print_not_triggered(self, event: str) -> None:
        self._out(f"No trigger matches {event}; nothing to run.")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        if not self.quiet:
            self._out(f"[{name}] JOB STARTED")

    def print_step(self, job: str, step: str, command: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._out(f"[{job}] ▶ {step}")
        self.print_debug(f"[{job}] $ {command}")

    def print_step_failed(self, job: str, step: str, exit_code: int) -> None:
        self._out(f"[{job}] ✗ {step} (exit={exit_code})")

    def print_job_finished(self, name: str, status: str, duration: float) -> None:
        mark = {"passed": "✓", "failed": "✗"}.get(status, "⏭")
        self._out(f"[{name}] {mark} {status} ({duration:.1f}s)")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"[{name}] ⏭ skipped ({reason})")

    def print_report(self, text: str) -> None:
        """Print the final rendered report."""
        self._out("", text)

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
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
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
