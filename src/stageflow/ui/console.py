"""Console output formatting utilities for stageflow."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, List, Optional

from ..model import Status
from ..results import RunSnapshot, first_failure, skipped_stages


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only print failures, errors and the final results
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_run_started(self, pipeline: str, run_id: str, stage_count: int) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._emit("\nRUN STARTED", f"Pipeline: {pipeline}", f"Run ID: {run_id}", f"Stages: {stage_count}", "")

    # ---------------------------------------------------------------------
    # Stages / jobs / steps
    # ---------------------------------------------------------------------

    def print_stage_start(self, name: str) -> None:
        if not self.quiet:
            self._emit(f"\nSTAGE STARTED: {name}")

    def print_stage_result(self, name: str, status: Status, reason: str = "") -> None:
        if self.quiet and status is not Status.FAILED:
            return
        suffix = f" ({reason})" if reason else ""
        self._emit(f"STAGE {status.value.upper()}: {name}{suffix}")

    def print_stage_skipped(self, name: str, reason: str) -> None:
        if not self.quiet:
            self._emit(f"\nSTAGE SKIPPED: {name} ({reason})")

    def print_job_start(self, stage: str, job: str, agent: str) -> None:
        if not self.quiet:
            self._emit(f"JOB STARTED: {stage}/{job} on {agent}")

    def print_job_result(self, stage: str, job: str, status: Status, reason: str = "") -> None:
        if self.quiet and status is not Status.FAILED:
            return
        suffix = f" ({reason})" if reason else ""
        self._emit(f"JOB {status.value.upper()}: {stage}/{job}{suffix}")

    def print_step(self, job: str, step: str) -> None:
        if not self.quiet:
            self._emit(f"STEP: {job} > {step}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print a step failure.

        Outside debug mode only the first line of *reason* and the last few
        lines of captured output are shown.
        """
        lines = [f"STEP FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        if output:
            tail = output.rstrip().splitlines()
            if not self.debug:
                tail = tail[-10:]
            lines.append("Output:")
            lines.extend(f"  | {line}" for line in tail)
        self._emit(*lines)

    # ---------------------------------------------------------------------
    # Plan / results
    # ---------------------------------------------------------------------

    def print_plan(self, pipeline: str, levels: Iterable[List[str]]) -> None:
        """Print stages grouped by dependency level."""
        lines = [f"\nPLAN: {pipeline}"]
        for i, level in enumerate(levels, start=1):
            lines.append(f"  {i}. {', '.join(level)}")
        self._emit(*lines)

    def print_results(self, snapshot: RunSnapshot) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for stage in snapshot.stages():
            label = stage.status.value.upper()
            if stage.optional:
                label += " (optional)"
            lines.append(f"  {stage.name}: {label}")
            for job in snapshot.children(stage.id):
                extra = f" ({job.reason})" if job.reason and job.status is not Status.SUCCEEDED else ""
                lines.append(f"    {job.name}: {job.status.value.upper()}{extra}")
        failure = first_failure(snapshot)
        if failure is not None:
            lines.append("")
            lines.append(f"First failure: {failure.id} ({failure.name})")
            if failure.reason:
                lines.append(f"  Reason: {failure.reason.splitlines()[0]}")
            tail = failure.output.rstrip().splitlines()
            if tail:
                lines.append("  Output:")
                lines.extend(f"  | {line}" for line in (tail if self.debug else tail[-10:]))
        skipped = skipped_stages(snapshot)
        if skipped:
            lines.append(f"Skipped stages: {', '.join(s.name for s in skipped)}")
        lines.append("-" * 40)
        lines.append(f"  Run: {snapshot.status().value.upper()}")
        self._emit(*lines)

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
        self._emit(*lines, err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)


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
