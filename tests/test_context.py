"""Tests for resolving the job context from the scheduler environment."""

from __future__ import annotations

from pathlib import Path

import pytest

import ssllaunch.context as context_module
from ssllaunch.config.loader import validate_config
from ssllaunch.context import JobContext, build_job_context
from ssllaunch.errors import JobContextError


def _config(**sections: object):
    return validate_config(dict(sections))


def _slurm_env(tmp_path: Path, **overrides: str) -> dict[str, str]:
    env = {
        "SLURM_JOB_ID": "4242",
        "SLURM_JOB_NAME": "moco",
        "SLURM_JOB_NUM_NODES": "2",
        "SLURM_CPUS_PER_TASK": "10",
        "SLURM_NODEID": "0",
        "SLURM_RESTART_COUNT": "1",
        "SLURM_MEM_PER_NODE": "64000",
        "SLURM_SUBMIT_HOST": "login1",
        "SLURM_CLUSTER_NAME": "gpu-cluster",
        "SLURM_GPUS_ON_NODE": "4",
        "TMPDIR": str(tmp_path / "scratch"),
    }
    env.update(overrides)
    return env


class TestBuildJobContext:
    def test_reads_scheduler_variables(self, tmp_path: Path) -> None:
        ctx = build_job_context(_config(), _slurm_env(tmp_path))

        assert ctx.job_id == "4242"
        assert ctx.job_name == "moco"
        assert ctx.num_nodes == 2
        assert ctx.cpus_per_task == 10
        assert ctx.restart_count == 1
        assert ctx.accelerators_per_node == 4
        assert ctx.mem_per_node_mb == 64000
        assert ctx.submit_host == "login1"
        assert ctx.cluster_name == "gpu-cluster"
        assert ctx.is_multi_node is True

    def test_data_root_is_unique_per_job(self, tmp_path: Path) -> None:
        ctx = build_job_context(_config(), _slurm_env(tmp_path))

        assert ctx.data_root == tmp_path / "scratch" / "4242" / "data"
        assert ctx.data_root_is_node_local is True

    def test_defaults_outside_scheduler(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(context_module.torch.cuda, "device_count", lambda: 0)
        monkeypatch.chdir(tmp_path)

        ctx = build_job_context(_config(run={"name": "local-run"}), {})

        assert ctx.job_id == "local"
        assert ctx.job_name == "local-run"
        assert ctx.num_nodes == 1
        assert ctx.restart_count == 0
        assert ctx.accelerators_per_node == 1
        assert ctx.checkpoint_dir == tmp_path / "checkpoints" / "local"
        assert ctx.log_dir == ctx.checkpoint_dir / "logs"
        assert ctx.durable_dir is None

    def test_config_overrides_take_precedence(self, tmp_path: Path) -> None:
        cfg = _config(
            cluster={"accelerators_per_node": 8},
            staging={"data_root": str(tmp_path / "data")},
            training={"checkpoint_dir": str(tmp_path / "ckpt")},
            archive={"durable_dir": str(tmp_path / "durable")},
        )

        ctx = build_job_context(cfg, _slurm_env(tmp_path))

        assert ctx.accelerators_per_node == 8
        assert ctx.data_root == tmp_path / "data"
        assert ctx.data_root_is_node_local is False
        assert ctx.checkpoint_dir == tmp_path / "ckpt"
        assert ctx.durable_dir == tmp_path / "durable"

    def test_env_paths_used_when_config_is_silent(self, tmp_path: Path) -> None:
        env = _slurm_env(
            tmp_path,
            CHECKPOINT_DIR=str(tmp_path / "env-ckpt"),
            DURABLE_DIR=str(tmp_path / "env-durable"),
        )

        ctx = build_job_context(_config(), env)

        assert ctx.checkpoint_dir == tmp_path / "env-ckpt"
        assert ctx.durable_dir == tmp_path / "env-durable"

    def test_shared_data_root_from_env(self, tmp_path: Path) -> None:
        env = _slurm_env(tmp_path, DATA_ROOT=str(tmp_path / "shared"))

        ctx = build_job_context(_config(), env)

        assert ctx.data_root == tmp_path / "shared"
        assert ctx.data_root_is_node_local is False

    def test_non_integer_env_var_raises(self, tmp_path: Path) -> None:
        env = _slurm_env(tmp_path, SLURM_RESTART_COUNT="twice")

        with pytest.raises(JobContextError, match="SLURM_RESTART_COUNT"):
            build_job_context(_config(), env)

    def test_node_id_outside_allocation_raises(self, tmp_path: Path) -> None:
        env = _slurm_env(tmp_path, SLURM_NODEID="5")

        with pytest.raises(JobContextError, match="node_id"):
            build_job_context(_config(), env)


class TestJobContextValues:
    def _ctx(self, tmp_path: Path, **overrides: object) -> JobContext:
        values: dict[str, object] = {
            "job_id": "1",
            "job_name": "moco",
            "restart_count": 0,
            "num_nodes": 1,
            "node_id": 0,
            "cpus_per_task": 16,
            "accelerators_per_node": 4,
            "per_accelerator_batch": 48,
            "data_root": tmp_path / "data",
            "checkpoint_dir": tmp_path / "ckpt",
            "log_dir": tmp_path / "logs",
        }
        values.update(overrides)
        return JobContext(**values)  # type: ignore[arg-type]

    @pytest.mark.parametrize(
        ("nodes", "accelerators", "expected"),
        [(1, 4, 192), (2, 4, 384), (4, 8, 1536)],
    )
    def test_batch_size(self, tmp_path: Path, nodes: int, accelerators: int, expected: int) -> None:
        ctx = self._ctx(tmp_path, num_nodes=nodes, accelerators_per_node=accelerators)

        assert ctx.batch_size == 48 * nodes * accelerators == expected

    def test_workers_match_cpu_allotment(self, tmp_path: Path) -> None:
        assert self._ctx(tmp_path).workers == 16

    def test_exported_env(self, tmp_path: Path) -> None:
        ctx = self._ctx(tmp_path, durable_dir=tmp_path / "durable")

        env = ctx.exported_env()

        assert env == {
            "BATCH_SIZE": "192",
            "WORKERS": "16",
            "CHECKPOINT_DIR": str(tmp_path / "ckpt"),
            "DURABLE_DIR": str(tmp_path / "durable"),
        }

    def test_frozen(self, tmp_path: Path) -> None:
        ctx = self._ctx(tmp_path)
        with pytest.raises(AttributeError):
            ctx.num_nodes = 3  # type: ignore[misc]

    def test_rejects_zero_nodes(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="num_nodes"):
            self._ctx(tmp_path, num_nodes=0)
