"""
Host side effects of a deployment.

The controller never touches a host directly; it goes through two small
protocols:

- :class:`HostTransport` stages a release directory, repoints ``current``
  and lists / removes release directories;
- :class:`Reloader` tells the reverse proxy or process manager to pick up
  the new ``current``.

Layout on every host (under its deploy root)::

    releases/
        42-abc123-1f2e3d4c/
        43-def456-9a8b7c6d/
    current -> releases/43-def456-9a8b7c6d

:class:`LocalTransport` implements the layout on the local filesystem;
``current`` is replaced with ``os.replace`` of a freshly created symlink,
so a reader sees either the old or the new target, never neither.
"""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from rollout.core.errors import DeploymentError
from rollout.core.logging import get_logger
from rollout.release.models import ArtifactHandle
from rollout.targets.registry import Host

logger = get_logger(__name__)

RELEASES_DIR = "releases"
CURRENT_LINK = "current"


@runtime_checkable
class HostTransport(Protocol):
    """Release-directory operations on one host."""

    def stage(self, host: Host, release_dir: str, artifact: ArtifactHandle) -> None:
        """Unpack ``artifact`` into a new ``releases/<release_dir>``; never overwrite."""
        ...

    def switch(self, host: Host, release_dir: str) -> None:
        """Atomically point ``current`` at ``releases/<release_dir>``."""
        ...

    def current(self, host: Host) -> str | None:
        """Release directory ``current`` points at, if any."""
        ...

    def clear(self, host: Host) -> None:
        """Remove ``current`` (undo of a first-ever switch)."""
        ...

    def releases(self, host: Host) -> list[str]:
        ...

    def remove(self, host: Host, release_dir: str) -> None:
        ...


@runtime_checkable
class Reloader(Protocol):
    """Signals the serving process on a host to pick up ``current``."""

    def reload(self, host: Host) -> None:
        ...


class LocalTransport:
    """
    Filesystem transport.

    Args:
        default_root: Deploy roots for hosts without ``deploy_root`` are
            ``<default_root>/<host.name>``
    """

    def __init__(self, default_root: Path | str):
        self.default_root = Path(default_root)

    def root(self, host: Host) -> Path:
        return Path(host.deploy_root) if host.deploy_root else self.default_root / host.name

    def release_path(self, host: Host, release_dir: str) -> Path:
        return self.root(host) / RELEASES_DIR / release_dir

    def stage(self, host: Host, release_dir: str, artifact: ArtifactHandle) -> None:
        dest = self.release_path(host, release_dir)
        if dest.exists():
            raise DeploymentError(f"Release directory already exists on {host.name}: {dest}").with_context(
                host=host.name, release_id=artifact.release_id
            )
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            artifact.unpack(dest)
        except Exception as e:
            shutil.rmtree(dest, ignore_errors=True)
            raise DeploymentError(
                f"Unpacking {artifact.release_id} on {host.name} failed: {e}", cause=e
            ).with_context(host=host.name, release_id=artifact.release_id) from e

    def switch(self, host: Host, release_dir: str) -> None:
        root = self.root(host)
        if not self.release_path(host, release_dir).is_dir():
            raise DeploymentError(f"Release directory missing on {host.name}: {release_dir}").with_context(
                host=host.name
            )
        tmp = root / f".{CURRENT_LINK}.{uuid.uuid4().hex[:8]}"
        try:
            os.symlink(f"{RELEASES_DIR}/{release_dir}", tmp, target_is_directory=True)
            os.replace(tmp, root / CURRENT_LINK)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise DeploymentError(f"Switching current on {host.name} failed: {e}", cause=e).with_context(
                host=host.name
            ) from e

    def current(self, host: Host) -> str | None:
        link = self.root(host) / CURRENT_LINK
        if not link.is_symlink():
            return None
        return Path(os.readlink(link)).name

    def clear(self, host: Host) -> None:
        (self.root(host) / CURRENT_LINK).unlink(missing_ok=True)

    def releases(self, host: Host) -> list[str]:
        directory = self.root(host) / RELEASES_DIR
        if not directory.is_dir():
            return []
        return sorted(p.name for p in directory.iterdir() if p.is_dir())

    def remove(self, host: Host, release_dir: str) -> None:
        if self.current(host) == release_dir:
            raise DeploymentError(f"Refusing to remove the active release on {host.name}: {release_dir}")
        shutil.rmtree(self.release_path(host, release_dir), ignore_errors=True)


class CommandReloader:
    """
    Runs a reload command (e.g. ``sudo systemctl reload nginx``) per host.

    ``{host}`` and ``{address}`` in the command are replaced with the
    host's name and address.
    """

    def __init__(self, command: str | Sequence[str], *, timeout: float = 60.0):
        self.command = command
        self.timeout = timeout

    def _argv(self, host: Host) -> list[str]:
        values = {"host": host.name, "address": host.address or host.name}
        parts = shlex.split(self.command) if isinstance(self.command, str) else list(self.command)
        return [part.format(**values) for part in parts]

    def reload(self, host: Host) -> None:
        argv = self._argv(host)
        try:
            proc = subprocess.run(  # noqa: S603
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise DeploymentError(f"Reload on {host.name} timed out after {self.timeout}s", cause=e).with_context(
                host=host.name
            ) from e
        except OSError as e:
            raise DeploymentError(f"Reload on {host.name} could not start: {e}", cause=e).with_context(
                host=host.name
            ) from e
        if proc.returncode != 0:
            raise DeploymentError(
                f"Reload on {host.name} exited with status {proc.returncode}: {proc.stderr.strip()[:200]}"
            ).with_context(host=host.name)
        logger.debug("deploy.reloaded", host=host.name, command=argv[0])

    def __repr__(self) -> str:
        return f"CommandReloader({self.command!r})"


class NullReloader:
    """No reload step (static content, or the process watches ``current``)."""

    def reload(self, host: Host) -> None:
        return None
