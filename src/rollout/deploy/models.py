"""Deployment models.

Pydantic v2 models for the per-target deployment record (persisted by the
:class:`~rollout.deploy.ledger.DeploymentLedger`) and the outcome returned
by every deploy or rollback.

Key Concepts:
    DeployState: ``idle -> fetching -> staged -> switching -> active``,
        with ``failed`` reachable from any non-idle state.
    DeploymentRecord: ``current`` release and a bounded, newest-first
        ``history`` of the releases active before it.
    DeploymentOutcome: What happened, including whether an automatic
        rollback ran and whether it worked. ``mark_complete()`` finalises
        timestamps and duration.

Tags:
    deploy, models, pydantic, rollback, state-machine
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, PrivateAttr


def _now() -> str:
    return datetime.now(UTC).isoformat()


class DeployState(str, Enum):
    """Deployment state of one target."""

    IDLE = "idle"
    FETCHING = "fetching"
    STAGED = "staged"
    SWITCHING = "switching"
    ACTIVE = "active"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    """How a deploy or rollback ended."""

    DEPLOYED = "deployed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    FAILED = "failed"


class ReleaseEntry(BaseModel):
    """A release that is or was active on a target."""

    release_id: str
    release_dir: str
    activated_at: str = Field(default_factory=_now)


class DeploymentRecord(BaseModel):
    """Deployment state of one target. Mutated only by the controller."""

    target: str
    state: DeployState = DeployState.IDLE
    current: ReleaseEntry | None = None
    history: list[ReleaseEntry] = Field(default_factory=list)
    updated_at: str = Field(default_factory=_now)
    last_error: str | None = None

    @property
    def current_release_id(self) -> str | None:
        return self.current.release_id if self.current else None

    @property
    def previous(self) -> ReleaseEntry | None:
        return self.history[0] if self.history else None

    def referenced_dirs(self) -> set[str]:
        dirs = {entry.release_dir for entry in self.history}
        if self.current:
            dirs.add(self.current.release_dir)
        return dirs

    def activate(self, entry: ReleaseEntry, depth: int) -> list[ReleaseEntry]:
        """Make ``entry`` current, pushing the old current onto history.

        Returns:
            History entries evicted beyond ``depth``.
        """
        if self.current is not None:
            self.history.insert(0, self.current)
        self.current = entry
        evicted = self.history[depth:]
        del self.history[depth:]
        return evicted

    def restore_previous(self) -> ReleaseEntry:
        """Pop the newest history entry and make it current (rollback).

        The release being rolled back from is dropped, not kept in history.
        """
        entry = self.history.pop(0)
        self.current = entry
        return entry

    def set_state(self, state: DeployState, error: str | None = None) -> None:
        self.state = state
        self.updated_at = _now()
        if state in (DeployState.ACTIVE, DeployState.IDLE) and error is None:
            self.last_error = None
        elif error is not None:
            self.last_error = error


class DeploymentOutcome(BaseModel):
    """Result of ``deploy`` or ``rollback`` for one target."""

    target: str
    release_id: str | None = None
    previous_release_id: str | None = None
    status: OutcomeStatus = OutcomeStatus.FAILED
    final_state: DeployState = DeployState.IDLE
    active_release_id: str | None = None
    hosts: list[str] = Field(default_factory=list)
    switched_hosts: list[str] = Field(default_factory=list)
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    error: str | None = None
    rollback_error: str | None = None

    _exception: Exception | None = PrivateAttr(default=None)

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.DEPLOYED

    @property
    def exception(self) -> Exception | None:
        """The error behind a failed outcome (a RollbackFailure when the rollback failed)."""
        return self._exception

    def attach(self, error: Exception) -> None:
        self._exception = error

    def raise_for_status(self) -> None:
        """Raise the recorded error, if any."""
        if self._exception is not None:
            raise self._exception

    def mark_complete(self, status: OutcomeStatus, final_state: DeployState, active_release_id: str | None) -> None:
        self.status = status
        self.final_state = final_state
        self.active_release_id = active_release_id
        self.completed_at = _now()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()
