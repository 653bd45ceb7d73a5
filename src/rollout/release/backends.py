"""
Storage backends for release artifacts.

A backend stores opaque files under keys of the form
``{app}/{commit}/{build}/{filename}``. Two are built in:

- :class:`FilesystemBackend` — a local directory tree;
- :class:`HttpBackend` — the artifact-store HTTP API (``PUT`` to upload,
  ``GET`` to download) below ``{base_url}/{repo}/``, with basic or token
  auth.

Backends know nothing about releases or checksums; the
:class:`~rollout.release.store.ReleaseStore` does. A missing key raises
:class:`~rollout.core.errors.NotFoundError` (with the key as id), which
the store re-raises with the release id.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx

from rollout.core.credentials import NO_CREDENTIALS, Credentials
from rollout.core.errors import ArtifactStoreError, NotFoundError
from rollout.core.logging import get_logger

logger = get_logger(__name__)

CHUNK_SIZE = 1024 * 1024


@runtime_checkable
class StorageBackend(Protocol):
    """Where artifact bytes live."""

    def put(self, key: str, source: Path) -> None:
        ...

    def get(self, key: str, dest: Path) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def exists(self, key: str) -> bool:
        ...


# =============================================================================
# Filesystem
# =============================================================================


class FilesystemBackend:
    """Artifacts as files below ``root``."""

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Key escapes store root: {key}")
        return path

    def put(self, key: str, source: Path) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        shutil.copyfile(source, tmp)
        os.replace(tmp, path)

    def get(self, key: str, dest: Path) -> None:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError(key, f"Artifact not found: {key}")
        shutil.copyfile(path, dest)

    def delete(self, key: str) -> None:
        path = self._path(key)
        path.unlink(missing_ok=True)
        parent = path.parent
        root = self.root.resolve()
        while parent != root and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def __repr__(self) -> str:
        return f"FilesystemBackend({str(self.root)!r})"


# =============================================================================
# HTTP artifact store
# =============================================================================


class HttpBackend:
    """
    Artifact-store HTTP API client.

    Args:
        base_url: Store base URL, e.g. ``https://artifacts.example.com/repository``
        repo: Repository name inserted before every key
        credentials: Token (Bearer header) or basic auth
        timeout: Per-request timeout in seconds
        transport: Injected httpx transport (tests)
    """

    def __init__(
        self,
        base_url: str,
        *,
        repo: str = "releases",
        credentials: Credentials = NO_CREDENTIALS,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.repo = repo.strip("/")
        self.credentials = credentials
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Lazily create the httpx client on first use."""
        if self._client is None:
            kwargs: dict[str, Any] = {
                "base_url": self.base_url,
                "timeout": self.timeout,
                "headers": self.credentials.auth_header(),
                "follow_redirects": True,
            }
            basic = self.credentials.basic_auth()
            if basic is not None:
                kwargs["auth"] = httpx.BasicAuth(*basic)
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.Client(**kwargs)
        return self._client

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{self.repo}/{key}"

    def _path(self, key: str) -> str:
        return f"/{self.repo}/{key}"

    @staticmethod
    def _check(response: httpx.Response, action: str) -> None:
        if 200 <= response.status_code < 300:
            return
        raise ArtifactStoreError(
            f"Artifact store {action} failed: HTTP {response.status_code}",
            status_code=response.status_code,
            url=str(response.request.url),
        )

    def put(self, key: str, source: Path) -> None:
        url = self._path(key)
        try:
            with open(source, "rb") as fh:
                size = os.fstat(fh.fileno()).st_size
                response = self._get_client().put(
                    url, content=iter(lambda: fh.read(CHUNK_SIZE), b""), headers={"Content-Length": str(size)}
                )
        except httpx.RequestError as e:
            raise ArtifactStoreError(f"Upload of {key} failed: {e}", url=self.url_for(key), cause=e) from e
        self._check(response, "upload")
        logger.debug("artifact_store.uploaded", key=key, status=response.status_code)

    def get(self, key: str, dest: Path) -> None:
        url = self._path(key)
        try:
            with self._get_client().stream("GET", url) as response:
                if response.status_code == 404:
                    raise NotFoundError(key, f"Artifact not found at {self.url_for(key)}")
                self._check(response, "download")
                with open(dest, "wb") as fh:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        fh.write(chunk)
        except httpx.RequestError as e:
            raise ArtifactStoreError(f"Download of {key} failed: {e}", url=self.url_for(key), cause=e) from e

    def delete(self, key: str) -> None:
        try:
            response = self._get_client().delete(self._path(key))
        except httpx.RequestError as e:
            raise ArtifactStoreError(f"Delete of {key} failed: {e}", url=self.url_for(key), cause=e) from e
        if response.status_code == 404:
            return
        self._check(response, "delete")

    def exists(self, key: str) -> bool:
        try:
            response = self._get_client().head(self._path(key))
        except httpx.RequestError as e:
            raise ArtifactStoreError(f"HEAD of {key} failed: {e}", url=self.url_for(key), cause=e) from e
        if response.status_code == 404:
            return False
        self._check(response, "lookup")
        return True

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> HttpBackend:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"HttpBackend({self.base_url!r}, repo={self.repo!r}, credentials={self.credentials!r})"
