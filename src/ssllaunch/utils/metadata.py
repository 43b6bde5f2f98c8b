"""Job metadata generation and persistence utilities."""

from __future__ import annotations

import json
import os
import platform
import subprocess
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ssllaunch.context import SCHEDULER_ENV_KEYS, JobContext
from ssllaunch.rendezvous import RendezvousEndpoint
from ssllaunch.staging.sources import DatasetLocation


def _get_git_sha() -> str | None:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            check=True,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        return "nogit"

    sha = result.stdout.strip()
    return sha or None


def scheduler_env_snapshot(environ: Mapping[str, str] | None = None) -> dict[str, str | None]:
    env = os.environ if environ is None else environ
    return {key: env.get(key) or None for key in SCHEDULER_ENV_KEYS}


def generate_meta(
    *,
    ctx: JobContext,
    dataset: str,
    location: DatasetLocation,
    endpoint: RendezvousEndpoint,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Describe this invocation: scheduler view, resolved inputs, and host."""
    return {
        "meta_version": 1,
        "job_id": ctx.job_id,
        "job_name": ctx.job_name,
        "restart_count": ctx.restart_count,
        "created_at": datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "dataset": dataset,
        "data_root": str(location.root),
        "data_kind": location.kind.value,
        "rendezvous": {"host": endpoint.host, "port": endpoint.port, "backend": endpoint.backend},
        "batch_size": ctx.batch_size,
        "workers": ctx.workers,
        "num_nodes": ctx.num_nodes,
        "accelerators_per_node": ctx.accelerators_per_node,
        "checkpoint_dir": str(ctx.checkpoint_dir),
        "durable_dir": str(ctx.durable_dir) if ctx.durable_dir is not None else None,
        "scheduler_env": scheduler_env_snapshot(environ),
        "git_sha": _get_git_sha(),
        "python_version": platform.python_version(),
        "argv": list(sys.argv),
        "hostname": platform.node(),
        "pid": os.getpid(),
    }


def write_meta_json(output_dir: str | Path, meta: dict[str, Any]) -> Path:
    """Atomically write metadata to output_dir/job_meta.json."""
    out_path = Path(output_dir)
    out_path.mkdir(parents=True, exist_ok=True)
    output_path = out_path / "job_meta.json"
    tmp_path = out_path / "job_meta.json.tmp"

    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(meta, handle, ensure_ascii=False, indent=2)
        handle.write("\n")

    tmp_path.replace(output_path)
    return output_path
