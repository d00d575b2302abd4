"""Filesystem helpers scoped to a base directory.

Every helper takes a base directory (the repository root or a package
directory) and a path relative to it, mirroring how package.yaml refers
to working directories.

Archive extraction rejects:
- absolute member paths
- members with .. components
- symlinks and hard links
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path

import httpx

from chartfork.errors import SourceFetchError

logger = logging.getLogger(__name__)

USER_AGENT = "chartfork/0.1"
DOWNLOAD_TIMEOUT = 60.0


def get_abs_path(fs: Path, path: str | Path) -> Path:
    """Resolve a path relative to a base directory."""
    return Path(fs) / path


def path_exists(fs: Path, path: str | Path) -> bool:
    """Check whether a path exists relative to a base directory."""
    return get_abs_path(fs, path).exists()


def remove_all(fs: Path, path: str | Path) -> None:
    """Remove a file or directory tree. Missing paths are ignored."""
    abs_path = get_abs_path(fs, path)
    if abs_path.is_dir() and not abs_path.is_symlink():
        shutil.rmtree(abs_path)
    elif abs_path.exists() or abs_path.is_symlink():
        abs_path.unlink()


def walk_files(fs: Path, path: str | Path) -> list[str]:
    """List every file under a directory as sorted POSIX-style relative paths."""
    root = get_abs_path(fs, path)
    if not root.is_dir():
        return []
    return sorted(
        p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()
    )


def make_subdirectory_root(fs: Path, path: str | Path, subdirectory: str) -> None:
    """Replace the contents of ``path`` with the contents of ``path/subdirectory``.

    Siblings of the subdirectory are discarded.
    """
    abs_path = get_abs_path(fs, path)
    abs_subdir = abs_path / subdirectory
    if not abs_subdir.is_dir():
        raise FileNotFoundError(f"Subdirectory {subdirectory} does not exist in {path}")

    staging = Path(tempfile.mkdtemp(prefix=".subdir-", dir=abs_path.parent))
    try:
        staged = staging / "root"
        shutil.move(str(abs_subdir), str(staged))
        shutil.rmtree(abs_path)
        shutil.move(str(staged), str(abs_path))
    finally:
        shutil.rmtree(staging, ignore_errors=True)


def prune_empty_dirs(fs: Path, path: str | Path) -> None:
    """Remove empty directories under ``path``, including ``path`` itself."""
    root = get_abs_path(fs, path)
    if not root.is_dir():
        return
    for dirpath, _, _ in sorted(os.walk(root), key=lambda w: -len(w[0])):
        current = Path(dirpath)
        if not any(current.iterdir()):
            current.rmdir()


def download_archive(fs: Path, url: str, archive_path: str | Path) -> None:
    """Download a URL to a file, writing through a .tmp file first."""
    out_path = get_abs_path(fs, archive_path)
    tmp_path = out_path.with_suffix(out_path.suffix + ".tmp")
    logger.debug(f"Downloading {url} to {out_path}")

    try:
        with httpx.stream(
            "GET",
            url,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            timeout=DOWNLOAD_TIMEOUT,
        ) as response:
            response.raise_for_status()
            with open(tmp_path, "wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
        tmp_path.replace(out_path)
    except httpx.HTTPError as e:
        if tmp_path.exists():
            tmp_path.unlink()
        raise SourceFetchError(f"Failed to download {url}: {e}") from e


def is_path_safe(member_path: str, target_dir: Path) -> bool:
    """Check that an archive member cannot escape ``target_dir``."""
    if member_path.startswith("/") or member_path.startswith("\\"):
        return False
    if len(member_path) >= 2 and member_path[1] == ":":
        return False

    normalized = member_path.replace("\\", "/")
    if ".." in normalized.split("/"):
        return False

    full_path = (target_dir / member_path).resolve()
    try:
        full_path.relative_to(target_dir.resolve())
        return True
    except ValueError:
        return False


def _strip_member_path(name: str, subdirectory: str) -> str | None:
    """Map an archive member to its destination path, or None to skip it.

    The archive's top-level directory (e.g. ``mychart/``) is always dropped;
    a subdirectory filter is applied to what remains.
    """
    parts = [p for p in name.replace("\\", "/").split("/") if p and p != "."]
    if len(parts) < 2:
        return None
    rel = "/".join(parts[1:])
    if not subdirectory:
        return rel
    prefix = subdirectory.strip("/") + "/"
    if not rel.startswith(prefix):
        return None
    return rel[len(prefix) :] or None


def extract_tgz(
    fs: Path,
    archive_path: str | Path,
    subdirectory: str,
    dest_path: str | Path,
    overwrite: bool = True,
) -> int:
    """Extract a gzipped tarball into ``dest_path``.

    Args:
        fs: Base directory
        archive_path: Tarball path relative to ``fs``
        subdirectory: Directory inside the archive root to treat as the root
        dest_path: Destination directory relative to ``fs``
        overwrite: Replace files that already exist in the destination

    Returns:
        Number of archive members that fell under ``subdirectory``
    """
    dest = get_abs_path(fs, dest_path)
    dest.mkdir(parents=True, exist_ok=True)

    matched = 0
    try:
        with tarfile.open(get_abs_path(fs, archive_path), "r:gz") as tf:
            for member in tf.getmembers():
                if member.issym() or member.islnk():
                    raise SourceFetchError(
                        f"Symlinks not supported in archives: {member.name}"
                    )
                rel = _strip_member_path(member.name, subdirectory)
                if rel is None:
                    continue
                if not is_path_safe(rel, dest):
                    raise SourceFetchError(f"Unsafe path in archive: {member.name}")
                matched += 1

                target = dest / rel
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    continue
                if target.exists() and not overwrite:
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                src = tf.extractfile(member)
                if src is None:
                    continue
                with src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
    except (tarfile.TarError, OSError) as e:
        raise SourceFetchError(f"Failed to extract {archive_path}: {e}") from e
    return matched
