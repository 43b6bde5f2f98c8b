"""Dataset staging onto fast local storage."""

from ssllaunch.staging import stagers as _stagers  # noqa: F401  (populates the registry)
from ssllaunch.staging.stager import DatasetStager
from ssllaunch.staging.sources import (
    Archive,
    DatasetLocation,
    Directory,
    NamedCorpus,
    SourceKind,
    parse_identifier,
)

__all__ = [
    "Archive",
    "DatasetLocation",
    "DatasetStager",
    "Directory",
    "NamedCorpus",
    "SourceKind",
    "parse_identifier",
]
