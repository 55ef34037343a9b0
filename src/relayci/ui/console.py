"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from ..model import JobResult, JobStatus, PipelineResult, Trigger


class Console:
    """Centralized console output formatting. Safe to call from job threads."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where progress goes (defaults to stdout at call time)
        """
        self.debug = debug
        self._stream = stream
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_run_started(self, pipeline: str, trigger: Trigger, job_count: int) -> None:
        """Print run start information."""
        lines = [
            "",
            "RUN STARTED",
            f"Pipeline: {pipeline}",
            f"Event: {trigger.event} ({trigger.branch})",
        ]
        if trigger.sha:
            lines.append(f"Commit: {trigger.sha[:12]}")
        lines += [f"Jobs: {job_count}", ""]
        self._out(*lines)

    def print_not_triggered(self, pipeline: str, trigger: Trigger) -> None:
        self._out(f"Pipeline {pipeline} not triggered by {trigger.event} on {trigger.branch!r}")

    def print_plan(self, levels: list[list[str]]) -> None:
        """Print the parallel stages of a resolved pipeline."""
        for idx, level in enumerate(levels):
            self._out(f"=== Stage {idx + 1}: {', '.join(level)} ===")

    def print_job_start(self, name: str) -> None:
        self._out(f"[{name}] JOB STARTED")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_step_failed(
        self,
        job: str,
        step: str,
        exit_code: Optional[int] = None,
        output: str = "",
    ) -> None:
        """
        Print a failed step with the tail of its output.

        Non-debug mode shows only the last few lines.
        """
        lines = [f"[{job}] STEP FAILED: {step}"]
        if exit_code is not None:
            lines.append(f"[{job}] Exit code: {exit_code}")
        tail = output.strip().splitlines()
        if not self.debug:
            tail = tail[-10:]
        lines += [f"[{job}]   {line}" for line in tail]
        self._out(*lines)

    def print_cache_hit(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: hit ({key})")

    def print_cache_miss(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: miss ({key})")

    def print_cache_saved(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: saved ({key})")

    def print_cache_warning(self, job: str, message: str) -> None:
        self._out(f"[{job}] CACHE WARNING: {message}", err=True)

    def print_job_finished(self, result: JobResult) -> None:
        duration = result.duration
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"[{result.name}] STATUS: {result.status.value}{suffix}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"[{name}] STATUS: skipped ({reason})")

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for name, job in result.jobs.items():
            line = f"  {name}: {job.status.value.upper()}"
            if job.status is JobStatus.FAILED and job.error:
                line += f" ({job.error.splitlines()[0]})"
            lines.append(line)
        lines.append(f"PIPELINE: {result.status.value.upper()}")
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
        if details:
            lines += [f"  {detail}" for detail in details]
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)


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
