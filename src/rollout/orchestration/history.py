"""
Run history with retention.

Finalized runs are kept in memory and, when a directory is configured,
written as one JSON file per run (``<run_id>.json``). Every ``record``
applies retention: runs beyond ``max_runs`` (newest kept) or older than
``max_age_days`` are dropped, files included.
"""

from __future__ import annotations

import json
import os
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from rollout.core.errors import ConfigError
from rollout.core.logging import get_logger
from rollout.orchestration.run import PipelineRun

logger = get_logger(__name__)


class RunHistory:
    """Finalized pipeline runs, newest first."""

    def __init__(
        self,
        directory: Path | str | None = None,
        *,
        max_runs: int = 50,
        max_age_days: int | None = 30,
    ):
        if max_runs < 1:
            raise ConfigError("max_runs must be >= 1")
        self.directory = Path(directory) if directory else None
        self.max_runs = max_runs
        self.max_age_days = max_age_days
        self._runs: dict[str, PipelineRun] = {}
        self._lock = threading.Lock()
        if self.directory:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        assert self.directory is not None
        for path in sorted(self.directory.glob("run_*.json")):
            try:
                run = PipelineRun.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("history.unreadable_run", path=str(path), error=str(e))
                continue
            self._runs[run.run_id] = run

    def record(self, run: PipelineRun) -> list[str]:
        """Store a finalized run and apply retention.

        Returns:
            Run ids pruned by retention.
        """
        if not run.is_terminal:
            raise ValueError(f"Run {run.run_id} is not finalized")
        payload = run.to_dict()
        with self._lock:
            self._runs[run.run_id] = run
            if self.directory:
                _write_json(self.directory / f"{run.run_id}.json", payload)
        return self.prune()

    def prune(self, now: datetime | None = None) -> list[str]:
        now = now or datetime.now(UTC)
        with self._lock:
            ordered = sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)
            doomed = ordered[self.max_runs:]
            if self.max_age_days is not None:
                cutoff = now - timedelta(days=self.max_age_days)
                doomed += [r for r in ordered[: self.max_runs] if (r.finished_at or r.created_at) < cutoff]
            removed = []
            for run in doomed:
                self._runs.pop(run.run_id, None)
                if self.directory:
                    (self.directory / f"{run.run_id}.json").unlink(missing_ok=True)
                removed.append(run.run_id)
        if removed:
            logger.debug("history.pruned", count=len(removed))
        return removed

    def get(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            return self._runs.get(run_id)

    def list(self, pipeline: str | None = None, limit: int | None = None) -> list[PipelineRun]:
        with self._lock:
            runs = [r for r in self._runs.values() if pipeline is None or r.pipeline == pipeline]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit] if limit else runs

    def next_build_number(self, pipeline: str) -> int:
        numbers = [r.parameters.build_number or 0 for r in self.list(pipeline)]
        return max(numbers, default=0) + 1

    def __len__(self) -> int:
        return len(self._runs)


def _write_json(path: Path, payload: dict) -> None:
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    os.replace(tmp, path)
