"""
Release management — packaging, publishing and fetching artifacts.
"""

from rollout.release.backends import FilesystemBackend, HttpBackend, StorageBackend
from rollout.release.models import ArtifactHandle, Release, make_release_id, parse_release_id
from rollout.release.packaging import package_directory, unpack_archive
from rollout.release.store import ReleaseStore

__all__ = [
    "ArtifactHandle",
    "FilesystemBackend",
    "HttpBackend",
    "Release",
    "ReleaseStore",
    "StorageBackend",
    "make_release_id",
    "package_directory",
    "parse_release_id",
    "unpack_archive",
]
