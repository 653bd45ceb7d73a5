"""Tests for checksum helpers."""

from __future__ import annotations

import hashlib
import io

from rollout.core.hashing import compute_hash, sha256_bytes, sha256_file, sha256_stream


class TestSha256:
    def test_bytes_matches_hashlib(self):
        assert sha256_bytes(b"hello") == hashlib.sha256(b"hello").hexdigest()

    def test_stream_and_file_agree(self, tmp_path):
        payload = b"x" * (3 * 1024 * 1024 + 17)
        path = tmp_path / "blob"
        path.write_bytes(payload)
        expected = sha256_bytes(payload)
        assert sha256_stream(io.BytesIO(payload)) == expected
        assert sha256_file(path) == expected


class TestComputeHash:
    def test_deterministic_and_order_sensitive(self):
        assert compute_hash("a", "b") == compute_hash("a", "b")
        assert compute_hash("a", "b") != compute_hash("b", "a")

    def test_length(self):
        assert len(compute_hash("web", 42, length=12)) == 12
