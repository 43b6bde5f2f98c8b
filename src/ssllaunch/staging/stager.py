from __future__ import annotations

import logging
from pathlib import Path

from ssllaunch.config.schemas import StagingConfig
from ssllaunch.errors import UnsupportedSource
from ssllaunch.staging.registry import get_stager
from ssllaunch.staging.sources import (
    DatasetLocation,
    DatasetSource,
    parse_identifier,
    stager_key,
)
from ssllaunch.staging.stagers import Stager

logger = logging.getLogger(__name__)


class DatasetStager:
    """Resolve a dataset identifier into a ready-to-read local directory."""

    def __init__(self, data_root: Path, settings: StagingConfig | None = None) -> None:
        self.data_root = data_root
        self.settings = settings or StagingConfig()

    def _resolve(self, identifier: str) -> tuple[Stager, DatasetSource]:
        source = parse_identifier(identifier)
        key = stager_key(source)
        stager_cls = get_stager(key)
        if not issubclass(stager_cls, Stager):
            raise UnsupportedSource(f"stager registered for '{key}' is not a Stager")
        stager = stager_cls(self.data_root, self.settings)
        return stager, source

    def plan(self, identifier: str) -> DatasetLocation:
        """Return the location staging would produce, without copying anything."""
        stager, source = self._resolve(identifier)
        return stager.target(source)

    def stage(self, identifier: str) -> DatasetLocation:
        stager, source = self._resolve(identifier)
        logger.info("staging: %s via %s into %s", identifier, type(stager).__name__, self.data_root)
        location = stager.stage(source)
        logger.info("staging: dataset ready at %s (%s)", location.root, location.kind.value)
        return location
