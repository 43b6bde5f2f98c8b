"""Immutable per-invocation job context resolved from the scheduler environment."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import torch

from ssllaunch.config.schemas import LauncherConfig
from ssllaunch.errors import JobContextError

__all__ = ["SCHEDULER_ENV_KEYS", "JobContext", "build_job_context"]

logger = logging.getLogger(__name__)

SCHEDULER_ENV_KEYS: tuple[str, ...] = (
    "SLURM_RESTART_COUNT",
    "SLURM_JOB_NUM_NODES",
    "SLURM_NNODES",
    "SLURM_CPUS_PER_TASK",
    "SLURM_JOB_ID",
    "SLURM_JOB_NAME",
    "SLURM_NODEID",
    "SLURM_MEM_PER_NODE",
    "SLURM_SUBMIT_HOST",
    "SLURM_CLUSTER_NAME",
    "SLURM_GPUS_ON_NODE",
    "SLURM_JOB_NODELIST",
)


@dataclass(frozen=True)
class JobContext:
    """Everything the launch layer needs to know about the current job."""

    job_id: str
    job_name: str
    restart_count: int
    num_nodes: int
    node_id: int
    cpus_per_task: int
    accelerators_per_node: int
    per_accelerator_batch: int
    data_root: Path
    checkpoint_dir: Path
    log_dir: Path
    durable_dir: Path | None = None
    data_root_is_node_local: bool = False
    mem_per_node_mb: int | None = None
    submit_host: str | None = None
    cluster_name: str | None = None

    def __post_init__(self) -> None:
        if self.num_nodes < 1:
            raise ValueError("num_nodes must be >= 1")
        if self.restart_count < 0:
            raise ValueError("restart_count must be >= 0")
        if not 0 <= self.node_id < self.num_nodes:
            raise ValueError("node_id must lie in [0, num_nodes)")
        if self.accelerators_per_node < 1 or self.cpus_per_task < 1:
            raise ValueError("accelerators_per_node and cpus_per_task must be >= 1")

    @property
    def is_multi_node(self) -> bool:
        return self.num_nodes > 1

    @property
    def world_size(self) -> int:
        """Number of rank-bearing launch slots (one per node)."""
        return self.num_nodes

    @property
    def batch_size(self) -> int:
        """Global batch size handed to the training program."""
        return self.per_accelerator_batch * self.num_nodes * self.accelerators_per_node

    @property
    def workers(self) -> int:
        """Data-loader worker threads per node."""
        return self.cpus_per_task

    def exported_env(self) -> dict[str, str]:
        """Values exported to every training process."""
        env = {
            "BATCH_SIZE": str(self.batch_size),
            "WORKERS": str(self.workers),
            "CHECKPOINT_DIR": str(self.checkpoint_dir),
        }
        if self.durable_dir is not None:
            env["DURABLE_DIR"] = str(self.durable_dir)
        return env


def _env_str(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    return value if value else None


def _env_int(environ: Mapping[str, str], name: str) -> int | None:
    """Return an env var as int, or *None* if unset.

    Raises :class:`JobContextError` when the variable is present but cannot be
    parsed as an integer.
    """
    val = _env_str(environ, name)
    if val is None:
        return None
    try:
        return int(val)
    except ValueError:
        msg = f"Env var {name} must be an integer, got: {val!r}"
        raise JobContextError(msg) from None


def _resolve_accelerators(config: LauncherConfig, environ: Mapping[str, str]) -> int:
    if config.cluster.accelerators_per_node is not None:
        return config.cluster.accelerators_per_node
    from_env = _env_int(environ, "SLURM_GPUS_ON_NODE")
    if from_env is not None:
        return max(1, from_env)
    detected = torch.cuda.device_count()
    if detected < 1:
        logger.warning("No CUDA devices visible; assuming one accelerator per node")
    return max(1, detected)


def _resolve_path(configured: str | None, environ: Mapping[str, str], env_name: str) -> Path | None:
    value = configured or _env_str(environ, env_name)
    return Path(value).expanduser() if value else None


def build_job_context(
    config: LauncherConfig,
    environ: Mapping[str, str] | None = None,
) -> JobContext:
    """Resolve a :class:`JobContext` from ``SLURM_*`` variables and config.

    Missing variables fall back to single-node, first-attempt defaults so the
    launcher also runs outside the scheduler.
    """
    env = os.environ if environ is None else environ

    num_nodes = _env_int(env, "SLURM_JOB_NUM_NODES")
    if num_nodes is None:
        num_nodes = _env_int(env, "SLURM_NNODES")
    job_id = _env_str(env, "SLURM_JOB_ID") or "local"
    job_name = _env_str(env, "SLURM_JOB_NAME") or config.run.name

    scratch = Path(_env_str(env, "TMPDIR") or tempfile.gettempdir())
    data_root = _resolve_path(config.staging.data_root, env, "DATA_ROOT")
    node_local = data_root is None
    if data_root is None:
        data_root = scratch / job_id / "data"
    checkpoint_dir = _resolve_path(config.training.checkpoint_dir, env, "CHECKPOINT_DIR")
    if checkpoint_dir is None:
        # Keyed on job id so a requeued job finds its own checkpoints again.
        checkpoint_dir = Path.cwd() / "checkpoints" / job_id
    log_dir = _resolve_path(config.training.log_dir, env, "LOG_DIR") or (checkpoint_dir / "logs")

    try:
        return JobContext(
            job_id=job_id,
            job_name=job_name,
            restart_count=_env_int(env, "SLURM_RESTART_COUNT") or 0,
            num_nodes=num_nodes or 1,
            node_id=_env_int(env, "SLURM_NODEID") or 0,
            cpus_per_task=_env_int(env, "SLURM_CPUS_PER_TASK") or os.cpu_count() or 1,
            accelerators_per_node=_resolve_accelerators(config, env),
            per_accelerator_batch=config.cluster.per_accelerator_batch,
            data_root=data_root,
            checkpoint_dir=checkpoint_dir,
            log_dir=log_dir,
            durable_dir=_resolve_path(config.archive.durable_dir, env, "DURABLE_DIR"),
            data_root_is_node_local=node_local,
            mem_per_node_mb=_env_int(env, "SLURM_MEM_PER_NODE"),
            submit_host=_env_str(env, "SLURM_SUBMIT_HOST"),
            cluster_name=_env_str(env, "SLURM_CLUSTER_NAME"),
        )
    except ValueError as exc:
        raise JobContextError(f"inconsistent scheduler environment: {exc}") from exc
