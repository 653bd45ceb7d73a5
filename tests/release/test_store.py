"""Tests for the release store."""

from __future__ import annotations

import threading

import httpx
import pytest

from rollout.core.errors import ConflictError, IntegrityError, NotFoundError, ValidationError
from rollout.core.hashing import sha256_file
from rollout.release.backends import FilesystemBackend, HttpBackend
from rollout.release.store import ReleaseStore


def _publish(store, artifact, build_number=1, commit="abc123", app="web", **kwargs):
    return store.publish(artifact, app=app, commit=commit, build_number=build_number, **kwargs)


# =============================================================================
# Publish
# =============================================================================


class TestPublish:
    def test_records_release(self, store, artifact):
        release = _publish(store, artifact, metadata={"branch": "main"})
        assert release.release_id == "1-abc123"
        assert release.checksum == sha256_file(artifact)
        assert release.size == artifact.stat().st_size
        assert store.exists("1-abc123")
        assert store.get("1-abc123").metadata == {"branch": "main"}

    def test_republish_same_bytes_is_idempotent(self, store, artifact):
        first = _publish(store, artifact)
        second = _publish(store, artifact)
        assert second == first
        assert second.created_at == first.created_at
        assert len(store.list()) == 1

    def test_republish_different_bytes_conflicts(self, store, artifact, artifact_v2):
        _publish(store, artifact)
        with pytest.raises(ConflictError) as exc_info:
            _publish(store, artifact_v2)
        assert exc_info.value.release_id == "1-abc123"
        assert store.get("1-abc123").checksum == sha256_file(artifact)

    def test_concurrent_identical_publishes_store_once(self, tmp_path, artifact):
        puts: list[str] = []

        class CountingBackend(FilesystemBackend):
            def put(self, key, source):
                puts.append(key)
                super().put(key, source)

        store = ReleaseStore(CountingBackend(tmp_path / "objects"), tmp_path / "index.json")
        results = []
        threads = [threading.Thread(target=lambda: results.append(_publish(store, artifact))) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == 4
        assert len({r.release_id for r in results}) == 1
        assert puts == ["web/abc123/1/" + artifact.name]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"app": "../web"},
            {"commit": "a/b"},
            {"build_number": -1},
            {"build_number": True},
        ],
    )
    def test_rejects_invalid_input(self, store, artifact, kwargs):
        with pytest.raises(ValidationError):
            _publish(store, artifact, **kwargs)

    def test_rejects_missing_artifact(self, store, tmp_path):
        with pytest.raises(ValidationError):
            _publish(store, tmp_path / "nope.tar.gz")


# =============================================================================
# Lookup
# =============================================================================


class TestLookup:
    def test_get_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.get("9-missing")

    def test_list_newest_first_and_by_app(self, store, artifact):
        _publish(store, artifact, build_number=1)
        _publish(store, artifact, build_number=3)
        _publish(store, artifact, build_number=2)
        _publish(store, artifact, build_number=5, app="api")
        assert [r.build_number for r in store.list()] == [5, 3, 2, 1]
        assert [r.release_id for r in store.list("web")] == ["3-abc123", "2-abc123", "1-abc123"]
        assert store.list("nothing") == []


# =============================================================================
# Fetch
# =============================================================================


class TestFetch:
    def test_into_directory(self, store, artifact, tmp_path):
        _publish(store, artifact)
        handle = store.fetch("1-abc123", tmp_path / "fetched")
        assert handle.path == tmp_path / "fetched" / artifact.name
        assert handle.path.read_bytes() == artifact.read_bytes()
        assert handle.temporary is False

    def test_into_temporary_directory(self, store, artifact):
        _publish(store, artifact)
        with store.fetch("1-abc123") as handle:
            assert handle.temporary is True
            assert handle.path.exists()
            directory = handle.path.parent
        assert not directory.exists()

    def test_detects_corruption(self, store, artifact, tmp_path):
        release = _publish(store, artifact)
        (store.backend.root / release.key).write_bytes(b"tampered")
        with pytest.raises(IntegrityError) as exc_info:
            store.fetch(release.release_id, tmp_path / "fetched")
        assert exc_info.value.expected == release.checksum
        assert not (tmp_path / "fetched" / artifact.name).exists()

    def test_missing_object(self, store, artifact, tmp_path):
        release = _publish(store, artifact)
        (store.backend.root / release.key).unlink()
        with pytest.raises(NotFoundError) as exc_info:
            store.fetch(release.release_id, tmp_path / "fetched")
        assert exc_info.value.release_id == release.release_id
        assert "missing from store" in exc_info.value.message

    def test_never_published(self, store):
        with pytest.raises(NotFoundError):
            store.fetch("1-nothing")


# =============================================================================
# Eviction / retention
# =============================================================================


class TestEviction:
    def test_evicted_release_is_not_found(self, store, artifact):
        release = _publish(store, artifact)
        store.evict(release.release_id)
        assert not store.exists(release.release_id)
        assert not (store.backend.root / release.key).exists()
        with pytest.raises(NotFoundError):
            store.fetch(release.release_id)

    def test_evict_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.evict("1-nothing")

    def test_retention_per_app(self, store, artifact):
        for n in (1, 2, 3):
            _publish(store, artifact, build_number=n)
        _publish(store, artifact, build_number=1, app="api", commit="def456")
        evicted = store.apply_retention(2)
        assert evicted == ["1-abc123"]
        assert [r.release_id for r in store.list("web")] == ["3-abc123", "2-abc123"]
        assert store.exists("1-def456")

    def test_retention_on_publish(self, tmp_path, artifact):
        store = ReleaseStore(FilesystemBackend(tmp_path / "objects"), tmp_path / "index.json", keep_last=1)
        _publish(store, artifact, build_number=1)
        _publish(store, artifact, build_number=2)
        assert [r.release_id for r in store.list()] == ["2-abc123"]

    def test_retention_requires_positive(self, store):
        with pytest.raises(ValidationError):
            store.apply_retention(0)


# =============================================================================
# Construction
# =============================================================================


class TestFromSettings:
    def test_local_store(self, settings):
        store = ReleaseStore.from_settings(settings)
        assert isinstance(store.backend, FilesystemBackend)
        assert store.index_path == settings.store_dir / "index.json"

    def test_http_store(self, settings):
        settings = settings.model_copy(update={"artifact_url": "https://artifacts.test/repository"})
        store = ReleaseStore.from_settings(settings)
        assert isinstance(store.backend, HttpBackend)

    def test_http_round_trip(self, tmp_path, artifact, server):
        backend = HttpBackend("https://artifacts.test/repository", transport=httpx.MockTransport(server))
        store = ReleaseStore(backend, tmp_path / "index.json")
        release = _publish(store, artifact)
        handle = store.fetch(release.release_id, tmp_path / "fetched")
        assert sha256_file(handle.path) == release.checksum
