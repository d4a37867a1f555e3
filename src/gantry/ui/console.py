"""Console output formatting utilities for gantry."""

from __future__ import annotations

import sys
import threading
from typing import Dict, List, Optional

from ..credentials import Redactor


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, redactor: Optional[Redactor] = None, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            redactor: Masks secret values in everything printed
            stream: Output stream (defaults to sys.stdout at print time)
        """
        self.debug = debug
        self.redactor = redactor or Redactor()
        self._stream = stream
        self._lock = threading.Lock()

    def _print(self, text: str = "", *, err: bool = False) -> None:
        out = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            print(self.redactor.redact(text), file=out)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}\n" + "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        ref: str,
        sha: str,
        job_count: int,
        instance_count: int,
    ) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED\n"
            f"Repository: {repository}\n"
            f"Workflow: {workflow}\n"
            f"Ref: {ref} ({sha[:12]})\n"
            f"Jobs: {job_count} ({instance_count} instances)\n"
        )

    def print_plan_stage(self, index: int, instances: List[str]) -> None:
        self._print(f"=== Stage {index + 1}: {', '.join(instances)} ===")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._print(f"[{name}] JOB STARTED")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._print(f"[{job}] ▶ {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        self._print(f"[{job}] ⏭ {name} (skipped: {reason})")

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._print(f"[{name}] STATUS: {status}{suffix}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._print(f"[{name}] STATUS: skipped ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job instance name
            reason: Failure reason/error message
            exit_code: Optional exit code
            output: Optional tail of the failing step's output (debug mode only)
        """
        lines = [f"[{name}] FAILED: {reason.splitlines()[0] if reason else 'Unknown error'}"]
        if exit_code is not None:
            lines.append(f"[{name}] Exit code: {exit_code}")
        if self.debug and output:
            lines.append(output.rstrip("\n"))
        self._print("\n".join(lines))

    def print_publish(self, job: str, event: str, ref: str) -> None:
        self._print(f"[{job}] PUBLISH {event}: {ref}")

    def print_results(self, results: Dict[str, str], outcome: str, aggregator: str) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {status.upper()}")
        lines.append("")
        lines.append(f"RUN {outcome.upper()} (via {aggregator})")
        self._print("\n".join(lines))

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
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print("\n".join(lines), err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            self._print(text.rstrip("\n"), err=True)
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
