"""Low-level copy, download, and extraction helpers used by the stagers."""

from __future__ import annotations

import logging
import shutil
import tarfile
import time
from collections.abc import Callable
from pathlib import Path

import requests

from ssllaunch.errors import MissingSource, StagingError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1 << 20

# Extraction filters ship with 3.11.4+ and 3.12.
_EXTRACT_FILTER: dict[str, str] = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}


def copy_file(source: Path, dest_dir: Path) -> Path:
    """Copy *source* into *dest_dir*, preserving timestamps."""
    if not source.is_file():
        raise MissingSource(f"source file {source} does not exist")
    dest_dir.mkdir(parents=True, exist_ok=True)
    target = dest_dir / source.name
    logger.info("staging: copying %s -> %s", source, target)
    shutil.copy2(source, target)
    return target


def mirror_tree(source: Path, dest: Path) -> Path:
    """Recursively copy *source* to *dest*, merging into an existing tree."""
    if not source.is_dir():
        raise MissingSource(f"source directory {source} does not exist")
    dest.parent.mkdir(parents=True, exist_ok=True)
    logger.info("staging: mirroring %s -> %s", source, dest)
    shutil.copytree(source, dest, dirs_exist_ok=True)
    return dest


def download(
    url: str,
    dest: Path,
    *,
    retries: int = 3,
    backoff_sec: float = 5.0,
    timeout_sec: float = 60.0,
    session: requests.Session | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Path:
    """Stream *url* to *dest*, retrying connection-level failures.

    The body is written to ``<dest>.part`` and renamed on success, so an
    interrupted transfer never looks like a finished one.
    """
    http = session or requests.Session()
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")
    last_error: Exception | None = None

    for attempt in range(1, retries + 1):
        logger.info("staging: downloading %s (attempt %d/%d)", url, attempt, retries)
        try:
            with http.get(url, stream=True, timeout=timeout_sec) as response:
                response.raise_for_status()
                with partial.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
        except requests.HTTPError as exc:
            partial.unlink(missing_ok=True)
            status = exc.response.status_code if exc.response is not None else None
            if status is not None and status < 500:
                raise MissingSource(f"download of {url} failed with HTTP {status}") from exc
            last_error = exc
        except (requests.ConnectionError, requests.Timeout) as exc:
            partial.unlink(missing_ok=True)
            last_error = exc
        else:
            partial.replace(dest)
            return dest

        logger.warning("staging: download of %s failed: %s", url, last_error)
        if attempt < retries:
            sleep(backoff_sec * attempt)

    raise MissingSource(f"download of {url} failed after {retries} attempts")


def _safe_members(archive: tarfile.TarFile, dest: Path) -> list[tarfile.TarInfo]:
    root = dest.resolve()
    members = archive.getmembers()
    for member in members:
        target = (root / member.name).resolve()
        if target != root and root not in target.parents:
            raise StagingError(f"archive member {member.name!r} escapes {dest}")
        if member.issym() or member.islnk():
            # Hard link names are archive-relative; symlinks are relative to the member.
            base = root if member.islnk() else target.parent
            link_target = (base / member.linkname).resolve()
            if root not in link_target.parents:
                raise StagingError(f"archive link {member.name!r} points outside {dest}")
    return members


def extract_tar(archive_path: Path, dest: Path, *, remove: bool = False) -> Path:
    """Extract a (possibly compressed) tar archive into *dest*."""
    dest.mkdir(parents=True, exist_ok=True)
    logger.info("staging: extracting %s -> %s", archive_path, dest)
    try:
        with tarfile.open(archive_path, "r:*") as archive:
            archive.extractall(dest, members=_safe_members(archive, dest), **_EXTRACT_FILTER)
    except tarfile.TarError as exc:
        raise StagingError(f"failed to extract {archive_path}: {exc}") from exc
    if remove:
        archive_path.unlink()
    return dest
