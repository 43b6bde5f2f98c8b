"""MLflow-backed tracker implementation."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

_MAX_PARAM_LENGTH = 500


def job_params(params: Mapping[str, Any], *, prefix: str = "") -> dict[str, str]:
    """Flatten nested job parameters into ``a.b.c`` keys with string values.

    MLflow stores params as strings of bounded length, so values are
    rendered and truncated here rather than by the client.
    """
    flat: dict[str, str] = {}
    for key, value in params.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(job_params(value, prefix=name))
        elif isinstance(value, (list, tuple)):
            flat[name] = " ".join(str(item) for item in value)[:_MAX_PARAM_LENGTH]
        else:
            flat[name] = str(value)[:_MAX_PARAM_LENGTH]
    return flat


class MLflowTracker:
    """Tracker adapter around the ``mlflow`` Python client."""

    def __init__(
        self,
        *,
        tracking_uri: str,
        experiment: str,
        run_name: str | None = None,
    ) -> None:
        self._tracking_uri = tracking_uri
        self._experiment = experiment
        self._run_name = run_name
        try:
            import mlflow  # type: ignore[import-not-found]
        except ModuleNotFoundError as exc:
            raise RuntimeError(
                "MLflowTracker requires the optional 'mlflow' dependency. "
                "Install it with `pip install -e '.[mlflow]'`."
            ) from exc
        self._mlflow = mlflow

    def start_run(self, run_name: str | None = None, *, tags: Mapping[str, str] | None = None) -> None:
        self._mlflow.set_tracking_uri(self._tracking_uri)
        self._mlflow.set_experiment(self._experiment)
        self._mlflow.start_run(run_name=run_name or self._run_name, tags=dict(tags or {}))

    def log_params(self, params: Mapping[str, Any]) -> None:
        flattened = job_params(params)
        if flattened:
            self._mlflow.log_params(flattened)

    def log_metrics(self, metrics: Mapping[str, float], *, step: int | None = None) -> None:
        if not metrics:
            return
        self._mlflow.log_metrics({name: float(value) for name, value in metrics.items()}, step=step)

    def log_artifact(self, path: str | Path, *, artifact_path: str | None = None) -> None:
        self._mlflow.log_artifact(str(path), artifact_path=artifact_path)

    def end_run(self, status: str = "FINISHED") -> None:
        self._mlflow.end_run(status=status)
