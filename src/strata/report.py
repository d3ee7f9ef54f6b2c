"""Run reports.

This module collects the outcome of every task of a run, computes the
aggregate exit code and renders the result as text or JSON.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from strata.scheduler import ExecutionTask, TaskStatus, aggregate_exit_code


class AggregationError(Exception):
    """Raised when a run ends with failed tasks."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


@dataclass
class TaskOutcome:
    """The outcome of one task, as reported."""

    unit: str
    status: str
    exit_code: Optional[int] = None
    retry_count: int = 0
    skip_reason: Optional[str] = None
    ignored: bool = False
    error: Optional[str] = None
    duration: float = 0.0

    @classmethod
    def from_task(cls, task: ExecutionTask, working_dir: str) -> "TaskOutcome":
        return cls(
            unit=os.path.relpath(task.path, working_dir),
            status=task.status.value,
            exit_code=task.exit_code,
            retry_count=task.retry_count,
            skip_reason=task.skip_reason,
            ignored=task.ignored,
            error=task.error,
            duration=round(task.duration, 3),
        )


@dataclass
class RunReport:
    """Outcome of a run across units."""

    command: str
    outcomes: List[TaskOutcome] = field(default_factory=list)
    exit_code: int = 0
    cancelled: bool = False
    summary: Dict[str, int] = field(default_factory=dict)

    @property
    def failed(self) -> List[TaskOutcome]:
        return [o for o in self.outcomes if o.status == TaskStatus.FAILED.value]

    def to_dict(self) -> Dict:
        """Convert the report to a dictionary for JSON serialization."""
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "cancelled": self.cancelled,
            "summary": self.summary,
            "units": [
                {
                    "unit": o.unit,
                    "status": o.status,
                    "exit_code": o.exit_code,
                    "retry_count": o.retry_count,
                    "skip_reason": o.skip_reason,
                    "ignored": o.ignored,
                    "error": o.error,
                    "duration": o.duration,
                }
                for o in self.outcomes
            ],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def format_text(self) -> str:
        """Format a human-readable summary."""
        lines = ["=" * 70, f"Run Summary: {self.command}", "=" * 70]
        for outcome in self.outcomes:
            line = f"   {outcome.status:<9} {outcome.unit}"
            if outcome.skip_reason:
                line += f" ({outcome.skip_reason})"
            elif outcome.ignored:
                line += " (error ignored)"
            elif outcome.retry_count:
                line += f" ({outcome.retry_count} retries)"
            lines.append(line)
        counts = ", ".join(f"{count} {status}" for status, count in sorted(self.summary.items()))
        lines.append(f"\n{counts or 'no units'}")
        if self.cancelled:
            lines.append("Run was cancelled")
        lines.append(f"Exit code: {self.exit_code}")
        lines.append("=" * 70)
        return "\n".join(lines)

    def raise_for_failures(self) -> None:
        """Raise AggregationError if any task failed or the run was cancelled."""
        if self.failed:
            units = ", ".join(o.unit for o in self.failed)
            raise AggregationError(
                f"{len(self.failed)} unit(s) failed: {units}", exit_code=self.exit_code
            )
        if self.cancelled:
            raise AggregationError("Run was cancelled", exit_code=self.exit_code)


def build_report(
    command: str, tasks: List[ExecutionTask], working_dir: str, cancelled: bool = False
) -> RunReport:
    """Build the report of a finished run.

    A cancelled run without failures still exits with 1.
    """
    summary: Dict[str, int] = {}
    for task in tasks:
        summary[task.status.value] = summary.get(task.status.value, 0) + 1

    exit_code = aggregate_exit_code([task.exit_code for task in tasks])
    if any(task.status is TaskStatus.FAILED for task in tasks):
        exit_code = 1 if exit_code == 0 else exit_code
    if cancelled and exit_code != 1:
        exit_code = 1

    return RunReport(
        command=command,
        outcomes=[TaskOutcome.from_task(task, working_dir) for task in tasks],
        exit_code=exit_code,
        cancelled=cancelled,
        summary=summary,
    )
