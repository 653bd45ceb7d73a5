"""
Stage results — the per-stage record inside a pipeline run.

A :class:`StageResult` moves ``pending -> running -> succeeded|failed``
or ``pending -> skipped``. Once terminal it is frozen: any further
transition raises :class:`~rollout.core.errors.TerminalStateError`. Each
result owns a lock held only while its fields change, so readers on other
threads (the API, the engine's aggregator) always see a consistent
snapshot through :meth:`to_dict`.

Related modules:
    stage_executor.py  — the only writer of running/succeeded/failed
    engine.py          — marks stages skipped and aggregates results
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from rollout.core.errors import TerminalStateError
from rollout.orchestration.stage_types import StageOutcome


class SkipReason:
    """Reasons recorded on skipped stages."""

    DEPENDENCY = "dependency_not_succeeded"
    CONDITION = "condition_false"
    CANCELLED = "cancelled"
    FAIL_FAST = "fail_fast"


class FailReason:
    """Reasons recorded on failed stages."""

    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    EXIT_STATUS = "exit_status"


@dataclass
class StageResult:
    """
    Outcome of one stage in one run.

    Attributes:
        stage: Stage name
        outcome: Current lifecycle state
        started_at: When execution began (None if never started)
        finished_at: When a terminal state was reached
        output: Captured stdout/stderr-equivalent text (bounded)
        data: Structured output handed to downstream stages
        exit_status: Exit status of the action's process, if any
        reason: Why the stage failed or was skipped
        error: Error message for failed stages
        attempts: Number of attempts made
    """

    stage: str
    outcome: StageOutcome = StageOutcome.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    output: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    exit_status: int | None = None
    reason: str | None = None
    error: str | None = None
    attempts: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    # =========================================================================
    # Transitions
    # =========================================================================

    def mark_running(self) -> None:
        with self._lock:
            self._guard("running")
            if self.outcome != StageOutcome.RUNNING:
                self.outcome = StageOutcome.RUNNING
                self.started_at = datetime.now(UTC)
            self.attempts += 1

    def mark_succeeded(
        self,
        *,
        output: str = "",
        data: dict[str, Any] | None = None,
        exit_status: int | None = None,
    ) -> None:
        with self._lock:
            self._guard("succeeded")
            self.outcome = StageOutcome.SUCCEEDED
            self.output = output
            self.data = dict(data or {})
            self.exit_status = exit_status
            self.finished_at = datetime.now(UTC)

    def mark_failed(
        self,
        error: str,
        *,
        reason: str = FailReason.ERROR,
        output: str = "",
        exit_status: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            self._guard("failed")
            self.outcome = StageOutcome.FAILED
            self.error = error
            self.reason = reason
            self.output = output
            self.exit_status = exit_status
            self.data = dict(data or {})
            self.finished_at = datetime.now(UTC)

    def mark_skipped(self, reason: str) -> bool:
        """Skip a stage that has not started.

        Returns False (and changes nothing) if the stage is already
        running or terminal.
        """
        with self._lock:
            if self.outcome != StageOutcome.PENDING:
                return False
            self.outcome = StageOutcome.SKIPPED
            self.reason = reason
            self.finished_at = datetime.now(UTC)
            return True

    def _guard(self, target: str) -> None:
        if self.outcome.is_terminal:
            raise TerminalStateError(
                f"Stage '{self.stage}' is already {self.outcome.value}; cannot become {target}"
            ).with_context(stage=self.stage)

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.outcome.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.outcome == StageOutcome.SUCCEEDED

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        with self._lock:
            return {
                "stage": self.stage,
                "outcome": self.outcome.value,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
                "duration_seconds": self.duration_seconds,
                "output": self.output,
                "data": self.data,
                "exit_status": self.exit_status,
                "reason": self.reason,
                "error": self.error,
                "attempts": self.attempts,
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageResult:
        """Restore a persisted result (read-only use: history listings)."""
        started = data.get("started_at")
        finished = data.get("finished_at")
        return cls(
            stage=data["stage"],
            outcome=StageOutcome(data.get("outcome", "pending")),
            started_at=datetime.fromisoformat(started) if started else None,
            finished_at=datetime.fromisoformat(finished) if finished else None,
            output=data.get("output", ""),
            data=data.get("data", {}),
            exit_status=data.get("exit_status"),
            reason=data.get("reason"),
            error=data.get("error"),
            attempts=data.get("attempts", 0),
        )

    def __repr__(self) -> str:
        return f"StageResult({self.stage!r}, {self.outcome.value})"
