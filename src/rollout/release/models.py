"""
Release models.

A :class:`Release` is an immutable, identified artifact: the pair
``(commit, build_number)`` is its identity and ``"<build_number>-<commit>"``
its string id. An :class:`ArtifactHandle` is what a fetch returns: a local
copy of the verified bytes plus the release they belong to.
"""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from rollout.core.errors import ValidationError
from rollout.release.packaging import unpack_archive

_RELEASE_ID_RE = re.compile(r"^(?P<build>\d+)-(?P<commit>[A-Za-z0-9._\-]+)$")
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-]*$")


def make_release_id(build_number: int, commit: str) -> str:
    return f"{build_number}-{commit}"


def parse_release_id(release_id: str) -> tuple[int, str]:
    """Split ``"<build_number>-<commit>"`` into its parts."""
    match = _RELEASE_ID_RE.match(release_id or "")
    if not match:
        raise ValidationError(f"Invalid release id: {release_id!r}", field="release_id", value=release_id)
    return int(match.group("build")), match.group("commit")


def validate_segment(name: str, value: str) -> str:
    """Values that become path / URL segments must be plain names."""
    if not isinstance(value, str) or not _SEGMENT_RE.match(value) or ".." in value:
        raise ValidationError(f"Invalid {name}: {value!r}", field=name, value=value)
    return value


@dataclass(frozen=True)
class Release:
    """
    A published, immutable build artifact.

    Attributes:
        app: Application name
        commit: Source commit the artifact was built from
        build_number: CI build number
        checksum: sha256 hex digest of the artifact bytes
        filename: Artifact file name in the store
        size: Size in bytes
        created_at: When the release was first published
        metadata: Free-form metadata recorded at publish time
    """

    app: str
    commit: str
    build_number: int
    checksum: str
    filename: str
    size: int
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def release_id(self) -> str:
        return make_release_id(self.build_number, self.commit)

    @property
    def key(self) -> str:
        """Storage key below the repository: ``{app}/{commit}/{build}/{filename}``."""
        return f"{self.app}/{self.commit}/{self.build_number}/{self.filename}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "release_id": self.release_id,
            "app": self.app,
            "commit": self.commit,
            "build_number": self.build_number,
            "checksum": self.checksum,
            "filename": self.filename,
            "size": self.size,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Release:
        return cls(
            app=data["app"],
            commit=data["commit"],
            build_number=int(data["build_number"]),
            checksum=data["checksum"],
            filename=data["filename"],
            size=int(data["size"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            metadata=dict(data.get("metadata") or {}),
        )

    def __str__(self) -> str:
        return self.release_id


@dataclass
class ArtifactHandle:
    """A fetched, checksum-verified local copy of a release artifact.

    Use as a context manager when the copy lives in a temporary directory;
    the directory is removed on exit.
    """

    release: Release
    path: Path
    temporary: bool = False

    @property
    def release_id(self) -> str:
        return self.release.release_id

    def unpack(self, dest: Path) -> Path:
        return unpack_archive(self.path, dest)

    def cleanup(self) -> None:
        if self.temporary:
            shutil.rmtree(self.path.parent, ignore_errors=True)

    def __enter__(self) -> ArtifactHandle:
        return self

    def __exit__(self, *exc: object) -> None:
        self.cleanup()
