"""Deployment Controller — release switch-over with automatic rollback.

Per target, a deployment walks ``idle -> fetching -> staged -> switching
-> active``:

1. **fetching** — the release is fetched and checksum-verified from the
   :class:`~rollout.release.store.ReleaseStore`. A failure here touches no
   host: the target returns to its previous state and the store error is
   raised to the caller.
2. **staged** — the artifact is unpacked into a new, uniquely named
   ``releases/<release_id>-<suffix>`` directory on every resolved host.
3. **switching** — ``current`` is repointed atomically on every host, then
   each host is reloaded.
4. **active** — the release becomes ``current`` in the ledger; the old one
   moves to the bounded history and unreferenced directories are pruned.

Any failure after staging triggers exactly one rollback attempt: hosts
already switched get their previous ``current`` back and are reloaded,
and the failed release's directories are removed. A failed rollback is
reported on the :class:`~rollout.deploy.models.DeploymentOutcome` and
logged for operator attention; it is never retried.

One lock per target is held from ``fetching`` until the deployment (or
its rollback) is finished, so two deployments never switch the same
target at once. The busy policy decides what the second caller gets:
``reject`` raises :class:`~rollout.core.errors.BusyError` immediately,
``wait`` queues for up to ``busy_wait_seconds``.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Literal

from rollout.core.errors import BusyError, DeploymentError, RollbackFailure, UnknownTargetError
from rollout.core.logging import get_logger
from rollout.core.settings import RolloutSettings
from rollout.deploy.ledger import DeploymentLedger
from rollout.deploy.models import (
    DeploymentOutcome,
    DeploymentRecord,
    DeployState,
    OutcomeStatus,
    ReleaseEntry,
)
from rollout.deploy.transport import CommandReloader, HostTransport, LocalTransport, NullReloader, Reloader
from rollout.release.models import Release
from rollout.release.store import ReleaseStore
from rollout.targets.registry import Host, TargetRegistry

logger = get_logger(__name__)

BusyPolicy = Literal["reject", "wait"]


class DeploymentController:
    """
    Deploys releases to targets and rolls them back.

    Args:
        store: Where releases are fetched from
        registry: Resolves target names to hosts
        transport: Host-side release directory operations
        reloader: Reload signal after switching
        ledger: Persists per-target deployment records
        history_depth: Prior releases kept per target (oldest evicted)
        busy_policy: ``reject`` or ``wait`` when a target is busy
        busy_wait_seconds: Upper bound on waiting under ``wait``
    """

    def __init__(
        self,
        store: ReleaseStore,
        registry: TargetRegistry,
        transport: HostTransport,
        *,
        reloader: Reloader | None = None,
        ledger: DeploymentLedger | None = None,
        history_depth: int = 5,
        busy_policy: BusyPolicy = "reject",
        busy_wait_seconds: float = 30.0,
    ):
        if history_depth < 1:
            raise ValueError("history_depth must be >= 1")
        if busy_policy not in ("reject", "wait"):
            raise ValueError(f"Unknown busy policy: {busy_policy}")
        self.store = store
        self.registry = registry
        self.transport = transport
        self.reloader = reloader or NullReloader()
        self.ledger = ledger or DeploymentLedger()
        self.history_depth = history_depth
        self.busy_policy = busy_policy
        self.busy_wait_seconds = busy_wait_seconds

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: RolloutSettings,
        store: ReleaseStore,
        registry: TargetRegistry,
    ) -> DeploymentController:
        reloader: Reloader = CommandReloader(settings.reload_command) if settings.reload_command else NullReloader()
        return cls(
            store,
            registry,
            LocalTransport(settings.deploy_root),
            reloader=reloader,
            ledger=DeploymentLedger(settings.ledger_dir),
            history_depth=settings.history_depth,
            busy_policy=settings.busy_policy,
            busy_wait_seconds=settings.busy_wait_seconds,
        )

    # =========================================================================
    # Locking
    # =========================================================================

    def _lock_for(self, target: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(target, threading.Lock())

    @contextmanager
    def _exclusive(self, target: str) -> Iterator[None]:
        lock = self._lock_for(target)
        if self.busy_policy == "reject":
            acquired = lock.acquire(blocking=False)
            message = None
        else:
            acquired = lock.acquire(timeout=self.busy_wait_seconds)
            message = f"Timed out after {self.busy_wait_seconds:g}s waiting for target: {target}"
        if not acquired:
            logger.warning("deploy.busy", target=target, policy=self.busy_policy)
            raise BusyError(target, message)
        try:
            yield
        finally:
            lock.release()

    def is_busy(self, target: str) -> bool:
        return self._lock_for(target).locked()

    # =========================================================================
    # Deploy
    # =========================================================================

    def deploy(self, release: Release | str, target: str) -> DeploymentOutcome:
        """Switch ``target`` over to ``release``.

        Returns:
            The outcome: ``deployed``, ``rolled_back`` (switch-over failed,
            previous release restored) or ``rollback_failed``.

        Raises:
            UnknownTargetError: ``target`` is not registered
            BusyError: Another deployment holds the target
            NotFoundError / IntegrityError / ArtifactStoreError: Fetching
                the release failed; no host was touched
        """
        release_id = release.release_id if isinstance(release, Release) else str(release)
        hosts = self.registry.resolve(target)

        with self._exclusive(target):
            record = self.ledger.load(target)
            state_before = record.state if record.state != DeployState.FAILED else DeployState.IDLE
            outcome = DeploymentOutcome(
                target=target,
                release_id=release_id,
                previous_release_id=record.current_release_id,
                hosts=[h.name for h in hosts],
            )
            logger.info("deploy.start", target=target, release_id=release_id, hosts=outcome.hosts)

            self._transition(record, DeployState.FETCHING)
            try:
                handle = self.store.fetch(release_id)
            except Exception as e:
                self._transition(record, state_before, error=str(e))
                logger.error("deploy.fetch_failed", target=target, release_id=release_id, error=str(e))
                raise

            release_dir = f"{release_id}-{uuid.uuid4().hex[:8]}"
            with handle:
                return self._stage_and_switch(record, outcome, hosts, release_dir, handle)

    def _stage_and_switch(self, record, outcome, hosts, release_dir, handle) -> DeploymentOutcome:
        target = record.target
        staged: list[Host] = []
        switched: list[Host] = []
        previous_dirs: dict[str, str | None] = {}
        try:
            for host in hosts:
                self.transport.stage(host, release_dir, handle)
                staged.append(host)
            self._transition(record, DeployState.STAGED)
            logger.debug("deploy.staged", target=target, release_dir=release_dir, hosts=len(staged))

            self._transition(record, DeployState.SWITCHING)
            for host in hosts:
                previous_dirs[host.name] = self.transport.current(host)
                self.transport.switch(host, release_dir)
                switched.append(host)
            for host in hosts:
                self.reloader.reload(host)
        except Exception as e:
            return self._recover(record, outcome, e, staged, switched, previous_dirs, release_dir)

        record.activate(ReleaseEntry(release_id=outcome.release_id, release_dir=release_dir), self.history_depth)
        self._transition(record, DeployState.ACTIVE)
        self._prune(record, hosts)
        outcome.switched_hosts = [h.name for h in switched]
        outcome.mark_complete(OutcomeStatus.DEPLOYED, DeployState.ACTIVE, outcome.release_id)
        logger.info(
            "deploy.complete",
            target=target,
            release_id=outcome.release_id,
            previous_release_id=outcome.previous_release_id,
            duration_seconds=outcome.duration_seconds,
        )
        return outcome

    def _recover(
        self,
        record: DeploymentRecord,
        outcome: DeploymentOutcome,
        error: Exception,
        staged: list[Host],
        switched: list[Host],
        previous_dirs: dict[str, str | None],
        release_dir: str,
    ) -> DeploymentOutcome:
        """One rollback attempt after a failed switch-over."""
        target = record.target
        outcome.error = str(error)
        outcome.switched_hosts = [h.name for h in switched]
        self._transition(record, DeployState.FAILED, error=str(error))
        logger.error("deploy.failed", target=target, release_id=outcome.release_id, error=str(error),
                     switched=outcome.switched_hosts)

        try:
            for host in switched:
                previous = previous_dirs.get(host.name)
                if previous:
                    self.transport.switch(host, previous)
                else:
                    self.transport.clear(host)
            for host in switched:
                if previous_dirs.get(host.name):
                    self.reloader.reload(host)
        except Exception as e:
            failure = RollbackFailure(
                f"Rollback of {target} after failed deploy of {outcome.release_id} failed: {e}",
                cause=e,
            ).with_context(target=target, release_id=outcome.release_id)
            outcome.rollback_error = failure.message
            outcome.attach(failure)
            self._transition(record, DeployState.FAILED, error=failure.message)
            logger.critical(
                "deploy.rollback_failed",
                target=target,
                release_id=outcome.release_id,
                error=str(e),
                operator_action_required=True,
            )
            outcome.mark_complete(OutcomeStatus.ROLLBACK_FAILED, DeployState.FAILED, None)
            return outcome

        for host in staged:
            try:
                self.transport.remove(host, release_dir)
            except Exception as e:  # noqa: BLE001
                logger.warning("deploy.cleanup_failed", target=target, host=host.name, error=str(e))

        outcome.attach(error)
        final_state = DeployState.ACTIVE if record.current else DeployState.IDLE
        self._transition(record, final_state, error=str(error))
        outcome.mark_complete(OutcomeStatus.ROLLED_BACK, final_state, record.current_release_id)
        logger.warning("deploy.rolled_back", target=target, failed_release_id=outcome.release_id,
                       active_release_id=record.current_release_id)
        return outcome

    # =========================================================================
    # Rollback
    # =========================================================================

    def rollback(self, target: str) -> DeploymentOutcome:
        """Switch ``target`` back to the newest release in its history.

        A failure is reported on the outcome (``rollback_failed``, carrying a
        :class:`~rollout.core.errors.RollbackFailure`), not raised.
        """
        hosts = self.registry.resolve(target)
        with self._exclusive(target):
            record = self.ledger.load(target)
            previous = record.previous
            outcome = DeploymentOutcome(
                target=target,
                release_id=previous.release_id if previous else None,
                previous_release_id=record.current_release_id,
                hosts=[h.name for h in hosts],
            )
            if previous is None:
                failure = RollbackFailure(f"No previous release to roll back to on {target}").with_context(
                    target=target
                )
                outcome.rollback_error = failure.message
                outcome.attach(failure)
                outcome.mark_complete(OutcomeStatus.ROLLBACK_FAILED, record.state, record.current_release_id)
                return outcome

            logger.info("rollback.start", target=target, to_release_id=previous.release_id,
                        from_release_id=record.current_release_id)
            self._transition(record, DeployState.SWITCHING)
            switched: list[str] = []
            try:
                for host in hosts:
                    self.transport.switch(host, previous.release_dir)
                    switched.append(host.name)
                for host in hosts:
                    self.reloader.reload(host)
            except Exception as e:
                failure = RollbackFailure(f"Rollback of {target} to {previous.release_id} failed: {e}", cause=e)
                failure.with_context(target=target, release_id=previous.release_id)
                outcome.switched_hosts = switched
                outcome.rollback_error = failure.message
                outcome.attach(failure)
                self._transition(record, DeployState.FAILED, error=failure.message)
                logger.critical("rollback.failed", target=target, error=str(e), switched=switched,
                                operator_action_required=True)
                outcome.mark_complete(OutcomeStatus.ROLLBACK_FAILED, DeployState.FAILED, None)
                return outcome

            record.restore_previous()
            self._transition(record, DeployState.ACTIVE)
            self._prune(record, hosts)
            outcome.switched_hosts = switched
            outcome.mark_complete(OutcomeStatus.ROLLED_BACK, DeployState.ACTIVE, previous.release_id)
            logger.info("rollback.complete", target=target, release_id=previous.release_id)
            return outcome

    # =========================================================================
    # Queries
    # =========================================================================

    def record(self, target: str) -> DeploymentRecord:
        """Ledger record of a target (a copy; changes are not persisted)."""
        return self.ledger.load(target)

    def status(self, target: str) -> dict[str, Any]:
        """Ledger record plus what ``current`` points at on each host."""
        hosts = self.registry.resolve(target)
        record = self.ledger.load(target)
        return {
            **record.model_dump(mode="json"),
            "busy": self.is_busy(target),
            "hosts": {h.name: self.transport.current(h) for h in hosts},
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _transition(self, record: DeploymentRecord, state: DeployState, error: str | None = None) -> None:
        record.set_state(state, error)
        self.ledger.save(record)

    def _prune(self, record: DeploymentRecord, hosts: tuple[Host, ...]) -> None:
        """Remove release directories no target sharing the host still references."""
        for host in hosts:
            keep = self._referenced_on(host, record)
            try:
                for release_dir in self.transport.releases(host):
                    if release_dir not in keep:
                        self.transport.remove(host, release_dir)
                        logger.debug("deploy.pruned", target=record.target, host=host.name,
                                     release_dir=release_dir)
            except (OSError, DeploymentError) as e:
                logger.warning("deploy.prune_failed", target=record.target, host=host.name, error=str(e))

    def _referenced_on(self, host: Host, record: DeploymentRecord) -> set[str]:
        keep = record.referenced_dirs()
        for target in self.ledger.targets():
            if target == record.target:
                continue
            try:
                members = {h.name for h in self.registry.resolve(target)}
            except UnknownTargetError:
                # Ledger entry for a target no longer in the inventory.
                continue
            if host.name in members:
                keep |= self.ledger.load(target).referenced_dirs()
        return keep
