"""Mirror the checkpoint directory to durable storage after training."""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from ssllaunch.errors import ArchiveFailed

__all__ = [
    "ArchiveSkipped",
    "ArchivedOutput",
    "FileEntry",
    "OutputArchiver",
    "build_manifest",
    "diff_manifests",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileEntry:
    size: int
    mtime: int  # whole seconds; filesystems disagree on sub-second precision


@dataclass(frozen=True)
class ArchivedOutput:
    source: Path
    destination: Path
    copied: tuple[str, ...]
    unchanged: tuple[str, ...]
    listing: tuple[str, ...]


@dataclass(frozen=True)
class ArchiveSkipped:
    reason: str


def build_manifest(root: Path) -> dict[str, FileEntry]:
    """Map relative POSIX paths of every regular file under *root* to size/mtime."""
    if not root.is_dir():
        return {}
    manifest: dict[str, FileEntry] = {}
    for path in root.rglob("*"):
        if path.is_file():
            stat = path.stat()
            manifest[path.relative_to(root).as_posix()] = FileEntry(
                size=stat.st_size, mtime=int(stat.st_mtime)
            )
    return manifest


def diff_manifests(
    source: Mapping[str, FileEntry], destination: Mapping[str, FileEntry]
) -> list[str]:
    """Relative paths that are missing from *destination* or differ in size/mtime."""
    return sorted(name for name, entry in source.items() if destination.get(name) != entry)


class OutputArchiver:
    """Idempotent, timestamp-preserving directory sync with per-file retries."""

    def __init__(
        self,
        *,
        retries: int = 3,
        backoff_sec: float = 2.0,
        copy: Callable[[Path, Path], object] = shutil.copy2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self._retries = retries
        self._backoff_sec = backoff_sec
        self._copy = copy
        self._sleep = sleep

    def archive(
        self, checkpoint_dir: Path | None, durable_dir: Path | None
    ) -> ArchivedOutput | ArchiveSkipped:
        if checkpoint_dir is None or durable_dir is None:
            skipped = ArchiveSkipped("checkpoint or durable directory is not set")
            logger.info("archive: skipped, %s", skipped.reason)
            return skipped
        if not checkpoint_dir.is_dir():
            skipped = ArchiveSkipped(f"{checkpoint_dir} does not exist")
            logger.info("archive: skipped, %s", skipped.reason)
            return skipped

        source_manifest = build_manifest(checkpoint_dir)
        pending = diff_manifests(source_manifest, build_manifest(durable_dir))
        unchanged = tuple(sorted(set(source_manifest) - set(pending)))
        logger.info(
            "archive: %s -> %s (%d to copy, %d unchanged)",
            checkpoint_dir,
            durable_dir,
            len(pending),
            len(unchanged),
        )

        durable_dir.mkdir(parents=True, exist_ok=True)
        for directory in sorted(p for p in checkpoint_dir.rglob("*") if p.is_dir()):
            (durable_dir / directory.relative_to(checkpoint_dir)).mkdir(parents=True, exist_ok=True)
        for name in pending:
            self._copy_with_retry(checkpoint_dir / name, durable_dir / name)

        listing = tuple(
            sorted(path.relative_to(durable_dir).as_posix() for path in durable_dir.rglob("*"))
        )
        logger.info("archive: destination contents:\n  %s", "\n  ".join(listing) or "<empty>")
        return ArchivedOutput(
            source=checkpoint_dir,
            destination=durable_dir,
            copied=tuple(pending),
            unchanged=unchanged,
            listing=listing,
        )

    def _copy_with_retry(self, source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, self._retries + 1):
            try:
                self._copy(source, target)
                return
            except OSError as exc:
                if attempt == self._retries:
                    raise ArchiveFailed(
                        f"could not copy {source} to {target} after {attempt} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "archive: copy of %s failed (attempt %d/%d): %s",
                    source,
                    attempt,
                    self._retries,
                    exc,
                )
                self._sleep(self._backoff_sec * attempt)
