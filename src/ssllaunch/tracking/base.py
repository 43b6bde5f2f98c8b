"""Tracking protocol and default no-op implementation."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol


class Tracker(Protocol):
    """What the job pipeline reports while it runs."""

    def start_run(self, run_name: str | None = None, *, tags: Mapping[str, str] | None = None) -> None:
        """Open a tracking run for this job invocation."""

    def log_params(self, params: Mapping[str, Any]) -> None:
        """Record the resolved job parameters."""

    def log_metrics(self, metrics: Mapping[str, float], *, step: int | None = None) -> None:
        """Record numeric results such as phase durations."""

    def log_artifact(self, path: str | Path, *, artifact_path: str | None = None) -> None:
        """Attach a file (e.g. job_meta.json) to the run."""

    def end_run(self, status: str = "FINISHED") -> None:
        """Close the run with FINISHED, FAILED or KILLED."""


class NullTracker:
    """No-op tracker used when tracking is disabled or unavailable."""

    def start_run(self, run_name: str | None = None, *, tags: Mapping[str, str] | None = None) -> None:
        _ = run_name, tags

    def log_params(self, params: Mapping[str, Any]) -> None:
        _ = params

    def log_metrics(self, metrics: Mapping[str, float], *, step: int | None = None) -> None:
        _ = metrics, step

    def log_artifact(self, path: str | Path, *, artifact_path: str | None = None) -> None:
        _ = path, artifact_path

    def end_run(self, status: str = "FINISHED") -> None:
        _ = status
