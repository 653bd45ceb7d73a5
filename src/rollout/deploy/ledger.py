"""
Deployment ledger — persisted per-target deployment records.

One JSON file per target (``<target>.json``) under the ledger directory.
Writes go to a temporary file first and are moved into place, so a crash
never leaves a half-written record. Without a directory the ledger keeps
records in memory only.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from rollout.core.errors import ConfigError
from rollout.core.logging import get_logger
from rollout.deploy.models import DeploymentRecord

logger = get_logger(__name__)


class DeploymentLedger:
    def __init__(self, directory: Path | str | None = None):
        self.directory = Path(directory) if directory else None
        self._records: dict[str, DeploymentRecord] = {}
        self._lock = threading.Lock()
        if self.directory:
            self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, target: str) -> Path:
        assert self.directory is not None
        return self.directory / f"{target}.json"

    def load(self, target: str) -> DeploymentRecord:
        """The record for ``target`` (a fresh idle one if never deployed)."""
        with self._lock:
            cached = self._records.get(target)
            if cached is not None:
                return cached.model_copy(deep=True)
            record = self._read(target) or DeploymentRecord(target=target)
            self._records[target] = record
            return record.model_copy(deep=True)

    def _read(self, target: str) -> DeploymentRecord | None:
        if not self.directory:
            return None
        path = self._path(target)
        if not path.exists():
            return None
        try:
            return DeploymentRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as e:
            raise ConfigError(f"Corrupt deployment record {path}: {e}", cause=e).with_context(target=target) from e

    def save(self, record: DeploymentRecord) -> None:
        with self._lock:
            self._records[record.target] = record.model_copy(deep=True)
            if self.directory:
                path = self._path(record.target)
                tmp = path.with_name(f".{path.name}.tmp")
                tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
                os.replace(tmp, path)
        logger.debug("ledger.saved", target=record.target, state=record.state.value,
                     current=record.current_release_id)

    def targets(self) -> list[str]:
        names = set(self._records)
        if self.directory:
            names.update(p.stem for p in self.directory.glob("*.json"))
        return sorted(names)
