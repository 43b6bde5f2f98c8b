"""Dataset source variants and identifier parsing."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ssllaunch.errors import InvalidDatasetIdentifier, UnsupportedExtension

# Longest suffix first so "x.tar.gz" is not read as "x.tar" + ".gz".
ARCHIVE_FORMATS: tuple[str, ...] = ("tar.gz", "tgz", "tar")

NAMED_CORPORA: dict[str, str] = {
    "imagenet": "imagenet",
    "imagenette": "imagenette",
    "imagenette2-160": "imagenette",
}


class SourceKind(str, Enum):
    NAMED_CORPUS = "named_corpus"
    SAMPLE_CORPUS = "sample_corpus"
    DIRECTORY = "directory"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class NamedCorpus:
    kind: str


@dataclass(frozen=True)
class Directory:
    path: Path


@dataclass(frozen=True)
class Archive:
    path: Path
    format: str


DatasetSource = NamedCorpus | Directory | Archive


@dataclass(frozen=True)
class DatasetLocation:
    """Resolved local dataset root, read-only once staging returns it."""

    root: Path
    kind: SourceKind

    @property
    def train_dir(self) -> Path:
        return self.root / "train"

    @property
    def val_dir(self) -> Path:
        return self.root / "val"


def archive_format(path: str | Path) -> str | None:
    """Return the archive format for *path*, or None if it is not one we extract."""
    name = Path(path).name.lower()
    for fmt in ARCHIVE_FORMATS:
        if name.endswith(f".{fmt}"):
            return fmt
    return None


def archive_stem(path: str | Path) -> str:
    """Strip the archive suffix from the file name: ``/a/foo.tar.gz`` -> ``foo``."""
    name = Path(path).name
    fmt = archive_format(name)
    if fmt is None:
        return Path(name).stem
    return name[: -(len(fmt) + 1)]


def parse_identifier(identifier: str) -> DatasetSource:
    """Classify a CLI dataset identifier into one of the source variants.

    Only the filesystem is inspected; nothing is copied, so a rejected
    identifier never leaves partial output behind.
    """
    cleaned = identifier.strip()
    if not cleaned:
        raise InvalidDatasetIdentifier(identifier)

    corpus = NAMED_CORPORA.get(cleaned.lower())
    if corpus is not None:
        return NamedCorpus(corpus)

    path = Path(cleaned).expanduser()
    if path.is_dir():
        return Directory(path.resolve())
    if path.is_file():
        fmt = archive_format(path)
        if fmt is None:
            raise UnsupportedExtension(path, ARCHIVE_FORMATS)
        return Archive(path.resolve(), fmt)

    raise InvalidDatasetIdentifier(identifier)


def stager_key(source: DatasetSource) -> str:
    """Registry key for the stager responsible for *source*."""
    if isinstance(source, NamedCorpus):
        return source.kind
    if isinstance(source, Directory):
        return "directory"
    return "archive"
