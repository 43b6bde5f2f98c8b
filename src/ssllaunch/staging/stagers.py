"""Staging strategies, one per dataset source variant."""

from __future__ import annotations

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TypeVar
from urllib.parse import urlparse

from ssllaunch.config.schemas import StagingConfig
from ssllaunch.errors import MissingSource, StagingError, UnsupportedSource
from ssllaunch.staging.registry import register_stager
from ssllaunch.staging.sources import (
    Archive,
    DatasetLocation,
    DatasetSource,
    Directory,
    SourceKind,
    archive_stem,
)
from ssllaunch.staging.transfer import copy_file, download, extract_tar, mirror_tree

logger = logging.getLogger(__name__)

S = TypeVar("S", Directory, Archive)


def _require(source: DatasetSource, variant: type[S]) -> S:
    if not isinstance(source, variant):
        raise UnsupportedSource(
            f"{type(source).__name__} cannot be staged as {variant.__name__.lower()}"
        )
    return source


class Stager(ABC):
    """Abstract base class for staging strategies."""

    def __init__(self, data_root: Path, settings: StagingConfig) -> None:
        self.data_root = data_root
        self.settings = settings

    @abstractmethod
    def target(self, source: DatasetSource) -> DatasetLocation:
        """Return where *source* will land, without touching the filesystem."""

    @abstractmethod
    def stage(self, source: DatasetSource) -> DatasetLocation:
        """Transfer and unpack *source* under the data root."""

    def _download(self, url: str, dest: Path) -> Path:
        return download(
            url,
            dest,
            retries=self.settings.download_retries,
            backoff_sec=self.settings.retry_backoff_sec,
            timeout_sec=self.settings.download_timeout_sec,
        )


@register_stager("imagenet")
class ImagenetStager(Stager):
    """Full ImageNet-1k from a shared directory of ILSVRC2012 tar parts."""

    TRAIN_PATTERN = "ILSVRC2012_img_train*.tar"
    VAL_PATTERN = "ILSVRC2012_img_val*.tar"
    RELABEL_SCRIPT = "valprep.sh"

    def target(self, source: DatasetSource) -> DatasetLocation:
        return DatasetLocation(self.data_root / "imagenet", SourceKind.NAMED_CORPUS)

    def _source_dir(self) -> Path:
        configured = self.settings.imagenet_source_dir
        if configured is None:
            raise MissingSource("staging.imagenet_source_dir is not configured")
        source_dir = Path(configured).expanduser()
        if not source_dir.is_dir():
            raise MissingSource(f"imagenet source directory {source_dir} does not exist")
        return source_dir

    def stage(self, source: DatasetSource) -> DatasetLocation:
        source_dir = self._source_dir()
        train_parts = sorted(source_dir.glob(self.TRAIN_PATTERN))
        val_parts = sorted(source_dir.glob(self.VAL_PATTERN))
        if not train_parts or not val_parts:
            raise MissingSource(
                f"expected {self.TRAIN_PATTERN} and {self.VAL_PATTERN} under {source_dir}"
            )

        location = self.target(source)
        local_train = [copy_file(part, location.root) for part in train_parts]
        local_val = [copy_file(part, location.root) for part in val_parts]

        for part in local_train:
            extract_tar(part, location.train_dir, remove=True)
        for inner in sorted(location.train_dir.glob("*.tar")):
            # One inner archive per class: nXXXXXXXX.tar -> train/nXXXXXXXX/
            extract_tar(inner, location.train_dir / inner.stem, remove=True)

        for part in local_val:
            extract_tar(part, location.val_dir, remove=True)
        self._relabel_validation(location.val_dir, source_dir)
        return location

    def _relabel_validation(self, val_dir: Path, source_dir: Path) -> None:
        if not any(val_dir.glob("*.JPEG")):
            logger.info("staging: %s already sorted into class folders", val_dir)
            return

        script = val_dir / self.RELABEL_SCRIPT
        local_copy = source_dir / self.RELABEL_SCRIPT
        if local_copy.is_file():
            shutil.copy2(local_copy, script)
        else:
            self._download(self.settings.valprep_url, script)

        logger.info("staging: sorting validation images with %s", script.name)
        try:
            subprocess.run(
                ["bash", script.name],
                cwd=val_dir,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as exc:
            raise StagingError(
                f"validation relabel script failed ({exc.returncode}): {exc.stderr.strip()}"
            ) from exc
        finally:
            script.unlink(missing_ok=True)


@register_stager("imagenette")
class ImagenetteStager(Stager):
    """Small fast.ai sample corpus fetched as a single .tgz."""

    def _archive_name(self) -> str:
        return Path(urlparse(self.settings.imagenette_url).path).name

    def target(self, source: DatasetSource) -> DatasetLocation:
        return DatasetLocation(
            self.data_root / archive_stem(self._archive_name()),
            SourceKind.SAMPLE_CORPUS,
        )

    def stage(self, source: DatasetSource) -> DatasetLocation:
        archive = self._download(
            self.settings.imagenette_url, self.data_root / self._archive_name()
        )
        extract_tar(archive, self.data_root, remove=True)
        location = self.target(source)
        if not location.root.is_dir():
            raise StagingError(f"{archive.name} did not unpack to {location.root}")
        return location


@register_stager("directory")
class DirectoryStager(Stager):
    """Arbitrary directory tree, mirrored as-is."""

    def target(self, source: DatasetSource) -> DatasetLocation:
        directory = _require(source, Directory)
        return DatasetLocation(self.data_root / directory.path.name, SourceKind.DIRECTORY)

    def stage(self, source: DatasetSource) -> DatasetLocation:
        directory = _require(source, Directory)
        location = self.target(directory)
        mirror_tree(directory.path, location.root)
        return location


@register_stager("archive")
class ArchiveStager(Stager):
    """Single tar/tgz/tar.gz file; the dataset root is named after the file."""

    def target(self, source: DatasetSource) -> DatasetLocation:
        archive = _require(source, Archive)
        return DatasetLocation(self.data_root / archive_stem(archive.path), SourceKind.ARCHIVE)

    def stage(self, source: DatasetSource) -> DatasetLocation:
        archive = _require(source, Archive)
        local = copy_file(archive.path, self.data_root)
        extract_tar(local, self.data_root, remove=True)
        location = self.target(archive)
        if not location.root.is_dir():
            raise StagingError(f"{archive.path.name} did not unpack to {location.root}")
        return location
