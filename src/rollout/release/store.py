"""Release Store — versioned, checksum-verified artifacts.

The store maps release ids to :class:`~rollout.release.models.Release`
records kept in a JSON index (``index.json``) and delegates the bytes to a
:class:`~rollout.release.backends.StorageBackend`.

Guarantees:

- ``publish`` is idempotent on ``(commit, build_number)``: the same bytes
  return the existing release without a second upload, different bytes
  raise :class:`~rollout.core.errors.ConflictError`;
- ``fetch`` verifies the sha256 of what it downloaded
  (:class:`~rollout.core.errors.IntegrityError` on mismatch) and raises
  :class:`~rollout.core.errors.NotFoundError` for releases never
  published or evicted;
- the index lock is held only while the index changes, never across an
  upload or download.

Example::

    store = ReleaseStore(FilesystemBackend("/var/lib/rollout/store"),
                         index_path="/var/lib/rollout/store/index.json")
    release = store.publish(Path("dist/web.tar.gz"), app="web",
                            commit="abc123", build_number=42)
    with store.fetch(release.release_id) as handle:
        handle.unpack(Path("/tmp/web-42"))
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from rollout.core.errors import ConflictError, IntegrityError, NotFoundError, ValidationError
from rollout.core.hashing import sha256_file
from rollout.core.logging import get_logger
from rollout.core.settings import RolloutSettings
from rollout.release.backends import FilesystemBackend, HttpBackend, StorageBackend
from rollout.release.models import ArtifactHandle, Release, make_release_id, validate_segment

logger = get_logger(__name__)


class ReleaseStore:
    """
    Publishes, looks up, fetches and evicts releases.

    Args:
        backend: Where artifact bytes are stored
        index_path: JSON index file (created on first publish)
        keep_last: When set, retention is applied per app after each publish
    """

    def __init__(
        self,
        backend: StorageBackend,
        index_path: Path | str,
        *,
        keep_last: int | None = None,
    ):
        self.backend = backend
        self.index_path = Path(index_path)
        self.keep_last = keep_last
        self._index_lock = threading.Lock()
        self._publish_locks: dict[str, threading.Lock] = {}
        self._publish_locks_guard = threading.Lock()

    @classmethod
    def from_settings(cls, settings: RolloutSettings) -> ReleaseStore:
        """HTTP store when ``artifact_url`` is set, else the local store dir."""
        backend: StorageBackend
        if settings.artifact_url:
            backend = HttpBackend(
                settings.artifact_url,
                repo=settings.artifact_repo,
                credentials=settings.credentials(),
                timeout=settings.artifact_timeout_seconds,
            )
        else:
            backend = FilesystemBackend(settings.store_dir)
        return cls(
            backend,
            settings.store_dir / "index.json",
            keep_last=settings.release_retention_count,
        )

    # =========================================================================
    # Index
    # =========================================================================

    def _read_index(self) -> dict[str, dict[str, Any]]:
        if not self.index_path.exists():
            return {}
        with open(self.index_path, encoding="utf-8") as fh:
            return json.load(fh)

    def _write_index(self, index: dict[str, dict[str, Any]]) -> None:
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.index_path.with_name(f".{self.index_path.name}.tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(index, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.index_path)

    def _lock_for(self, release_id: str) -> threading.Lock:
        with self._publish_locks_guard:
            return self._publish_locks.setdefault(release_id, threading.Lock())

    # =========================================================================
    # Operations
    # =========================================================================

    def publish(
        self,
        artifact: Path | str,
        *,
        app: str,
        commit: str,
        build_number: int,
        metadata: Mapping[str, Any] | None = None,
    ) -> Release:
        """Upload ``artifact`` as release ``"<build_number>-<commit>"``.

        Raises:
            ConflictError: Same id already published with a different checksum
            ArtifactStoreError: Upload to the HTTP store failed
        """
        artifact = Path(artifact)
        validate_segment("app", app)
        validate_segment("commit", commit)
        if isinstance(build_number, bool) or not isinstance(build_number, int) or build_number < 0:
            raise ValidationError("build_number must be a non-negative integer", field="build_number",
                                  value=build_number)
        if not artifact.is_file():
            raise ValidationError(f"Artifact not found: {artifact}", field="artifact", value=str(artifact))

        release_id = make_release_id(build_number, commit)
        checksum = sha256_file(artifact)

        with self._lock_for(release_id):
            with self._index_lock:
                existing = self._read_index().get(release_id)
            if existing is not None:
                current = Release.from_dict(existing)
                if current.checksum == checksum:
                    logger.info("release.publish_unchanged", release_id=release_id, app=current.app)
                    return current
                raise ConflictError(release_id, current.checksum, checksum)

            release = Release(
                app=app,
                commit=commit,
                build_number=build_number,
                checksum=checksum,
                filename=artifact.name,
                size=artifact.stat().st_size,
                metadata=dict(metadata or {}),
            )
            self.backend.put(release.key, artifact)

            with self._index_lock:
                index = self._read_index()
                index[release_id] = release.to_dict()
                self._write_index(index)

        logger.info(
            "release.published",
            release_id=release_id,
            app=app,
            checksum=checksum[:12],
            size=release.size,
        )
        if self.keep_last:
            self.apply_retention(self.keep_last, app=app)
        return release

    def get(self, release_id: str) -> Release:
        with self._index_lock:
            data = self._read_index().get(release_id)
        if data is None:
            raise NotFoundError(release_id)
        return Release.from_dict(data)

    def exists(self, release_id: str) -> bool:
        with self._index_lock:
            return release_id in self._read_index()

    def list(self, app: str | None = None) -> list[Release]:
        """Releases newest first (by build number, then publish time)."""
        with self._index_lock:
            records = list(self._read_index().values())
        releases = [Release.from_dict(r) for r in records if app is None or r["app"] == app]
        releases.sort(key=lambda r: (r.build_number, r.created_at), reverse=True)
        return releases

    def fetch(self, release_id: str, dest_dir: Path | str | None = None) -> ArtifactHandle:
        """Download and verify a release artifact.

        Args:
            release_id: Release to fetch
            dest_dir: Where to place the file; a temporary directory
                (removed by ``handle.cleanup()``) when omitted

        Raises:
            NotFoundError: Never published, evicted, or missing in the backend
            IntegrityError: Downloaded bytes do not match the recorded checksum
        """
        release = self.get(release_id)
        temporary = dest_dir is None
        directory = Path(tempfile.mkdtemp(prefix="rollout-fetch-")) if temporary else Path(dest_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / release.filename

        try:
            self.backend.get(release.key, path)
        except NotFoundError as e:
            self._discard(path, directory, temporary)
            raise NotFoundError(release_id, f"Release {release_id} missing from store: {e.message}") from e
        except Exception:
            self._discard(path, directory, temporary)
            raise

        actual = sha256_file(path)
        if actual != release.checksum:
            self._discard(path, directory, temporary)
            logger.error("release.integrity_failed", release_id=release_id,
                         expected=release.checksum[:12], actual=actual[:12])
            raise IntegrityError(release_id, release.checksum, actual)

        logger.debug("release.fetched", release_id=release_id, path=str(path))
        return ArtifactHandle(release=release, path=path, temporary=temporary)

    def evict(self, release_id: str) -> Release:
        """Remove a release from the index and the backend."""
        with self._index_lock:
            index = self._read_index()
            data = index.pop(release_id, None)
            if data is None:
                raise NotFoundError(release_id)
            self._write_index(index)
        release = Release.from_dict(data)
        self.backend.delete(release.key)
        logger.info("release.evicted", release_id=release_id, app=release.app)
        return release

    def apply_retention(self, keep_last: int, app: str | None = None) -> list[str]:
        """Keep the newest ``keep_last`` releases per app; returns evicted ids."""
        if keep_last < 1:
            raise ValidationError("keep_last must be >= 1", field="keep_last", value=keep_last)
        by_app: dict[str, list[Release]] = {}
        for release in self.list(app):
            by_app.setdefault(release.app, []).append(release)

        evicted: list[str] = []
        for releases in by_app.values():
            for release in releases[keep_last:]:
                try:
                    self.evict(release.release_id)
                except NotFoundError:
                    continue
                evicted.append(release.release_id)
        return evicted

    @staticmethod
    def _discard(path: Path, directory: Path, temporary: bool) -> None:
        path.unlink(missing_ok=True)
        if temporary:
            try:
                directory.rmdir()
            except OSError:
                pass

    def __repr__(self) -> str:
        return f"ReleaseStore({self.backend!r}, index={str(self.index_path)!r})"
