"""
Artifact packaging.

``package_directory`` turns a build workspace into a ``.tar.gz`` whose
bytes depend only on file names, contents and executable bits: entries
are sorted, timestamps and ownership zeroed, and the gzip header carries
no mtime. Re-packaging an unchanged workspace therefore yields the same
checksum, which is what makes publishing idempotent.
"""

from __future__ import annotations

import gzip
import os
import tarfile
from collections.abc import Iterable
from pathlib import Path

from rollout.core.errors import ValidationError
from rollout.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_EXCLUDES = (".git", "__pycache__", ".rollout")


def package_directory(
    src: Path | str,
    dest: Path | str,
    *,
    exclude: Iterable[str] = DEFAULT_EXCLUDES,
) -> Path:
    """Build a deterministic ``.tar.gz`` of ``src`` at ``dest``.

    Args:
        src: Directory to package; its contents become the archive root
        dest: Archive path to write
        exclude: Directory or file names skipped anywhere in the tree

    Returns:
        The archive path.
    """
    src = Path(src)
    dest = Path(dest)
    if not src.is_dir():
        raise ValidationError(f"Not a directory: {src}", field="source_dir", value=str(src))
    excluded = set(exclude)
    dest.parent.mkdir(parents=True, exist_ok=True)

    files: list[Path] = []
    for root, dirs, names in os.walk(src):
        dirs[:] = sorted(d for d in dirs if d not in excluded)
        for name in sorted(names):
            path = Path(root) / name
            if name in excluded or path.resolve() == dest.resolve():
                continue
            files.append(path)

    with open(dest, "wb") as raw, gzip.GzipFile(fileobj=raw, mode="wb", mtime=0, filename="") as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for path in files:
                info = _tarinfo(tar, path, path.relative_to(src).as_posix())
                if info.isfile():
                    with open(path, "rb") as fh:
                        tar.addfile(info, fh)
                else:
                    tar.addfile(info)

    logger.debug("release.packaged", source=str(src), archive=str(dest), files=len(files))
    return dest


def _tarinfo(tar: tarfile.TarFile, path: Path, arcname: str) -> tarfile.TarInfo:
    info = tar.gettarinfo(str(path), arcname=arcname)
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    if info.isfile():
        info.mode = 0o755 if os.access(path, os.X_OK) else 0o644
    return info


def unpack_archive(archive: Path | str, dest: Path | str) -> Path:
    """Extract a release archive into ``dest`` (which must not exist yet).

    Members escaping ``dest`` (absolute paths, ``..``, links outside) are
    rejected by tarfile's ``data`` filter.
    """
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=False)
    with tarfile.open(archive, mode="r:*") as tar:
        tar.extractall(dest, filter="data")
    return dest
