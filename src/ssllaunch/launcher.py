"""Launch the external training program on one node or fanned out across nodes."""

from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from ssllaunch.config.schemas import LauncherConfig
from ssllaunch.context import JobContext
from ssllaunch.errors import TrainingProcessFailed
from ssllaunch.rendezvous import RendezvousEndpoint, wait_until_ready
from ssllaunch.resume import Phase, checkpoint_for
from ssllaunch.staging.sources import DatasetLocation

__all__ = ["ExitStatus", "ProcessLauncher", "TaskDescriptor", "WorkerAssignment"]

logger = logging.getLogger(__name__)

_TERMINATE_GRACE_SEC = 30.0


@dataclass(frozen=True)
class TaskDescriptor:
    """One training process: what to run, as which rank, with which env overrides."""

    command: tuple[str, ...]
    args: tuple[str, ...]
    rank: int
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> tuple[str, ...]:
        return self.command + self.args


@dataclass(frozen=True)
class WorkerAssignment:
    rank: int
    node_ordinal: int
    startup_delay_sec: float
    task: TaskDescriptor
    log_path: Path


@dataclass(frozen=True)
class ExitStatus:
    phase: Phase
    returncodes: Mapping[int, int]
    duration_sec: float
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return all(code == 0 for code in self.returncodes.values())


class ProcessLauncher:
    """Start one phase of training and block until every process exits.

    Single-node jobs run the program once as rank 0 against the loopback
    endpoint; the program spawns one worker per local accelerator itself.
    Multi-node jobs dispatch one ``srun`` step per node, each carrying its
    own rank in the environment.
    """

    def __init__(
        self,
        ctx: JobContext,
        config: LauncherConfig,
        *,
        popen: Callable[..., Any] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        wait_ready: Callable[..., None] = wait_until_ready,
        base_env: Mapping[str, str] | None = None,
        poll_interval_sec: float = 1.0,
    ) -> None:
        self.ctx = ctx
        self.cluster = config.cluster
        self.training = config.training
        self._popen = popen
        self._sleep = sleep
        self._clock = clock
        self._wait_ready = wait_ready
        self._base_env = base_env
        if poll_interval_sec <= 0:
            raise ValueError("poll_interval_sec must be > 0")
        self._poll_interval_sec = poll_interval_sec

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def command_for(self, phase: Phase) -> tuple[str, ...]:
        if phase is Phase.PRETRAIN:
            return tuple(self.training.pretrain_command)
        return tuple(self.training.lincls_command)

    def build_args(
        self,
        phase: Phase,
        location: DatasetLocation,
        endpoint: RendezvousEndpoint,
        checkpoint_dir: Path,
        world_size: int,
        rank: int,
        *,
        resume_from: Path | None = None,
        extra_args: Sequence[str] = (),
    ) -> tuple[str, ...]:
        args = [
            str(location.root),
            "--dist-url",
            endpoint.url,
            "--dist-backend",
            endpoint.backend,
            "--multiprocessing-distributed",
            "--world-size",
            str(world_size),
            "--rank",
            str(rank),
            "--batch-size",
            str(self.ctx.batch_size),
            "--workers",
            str(self.ctx.workers),
            "--checkpoint-dir",
            str(checkpoint_dir),
        ]
        if phase is Phase.LINCLS:
            args += ["--pretrained", str(checkpoint_for(Phase.PRETRAIN, checkpoint_dir).path)]
        if resume_from is not None:
            args += ["--resume", str(resume_from)]
        args += list(extra_args)
        return tuple(args)

    def build_task(
        self,
        phase: Phase,
        location: DatasetLocation,
        endpoint: RendezvousEndpoint,
        checkpoint_dir: Path,
        world_size: int,
        rank: int,
        *,
        resume_from: Path | None = None,
        extra_args: Sequence[str] = (),
    ) -> TaskDescriptor:
        env = {
            **self.ctx.exported_env(),
            **endpoint.as_env(),
            "RANK": str(rank),
            "WORLD_SIZE": str(world_size),
        }
        return TaskDescriptor(
            command=self.command_for(phase),
            args=self.build_args(
                phase,
                location,
                endpoint,
                checkpoint_dir,
                world_size,
                rank,
                resume_from=resume_from,
                extra_args=extra_args,
            ),
            rank=rank,
            env=env,
        )

    def rank_log_path(self, phase: Phase, rank: int) -> Path:
        return self.ctx.log_dir / f"{self.ctx.job_name}_{self.ctx.job_id}_{phase.value}_rank{rank}.log"

    def build_assignments(
        self,
        phase: Phase,
        location: DatasetLocation,
        endpoint: RendezvousEndpoint,
        checkpoint_dir: Path,
        world_size: int,
        *,
        resume_from: Path | None = None,
        extra_args: Sequence[str] = (),
    ) -> list[WorkerAssignment]:
        """One assignment per node; rank equals the node's position in the allocation."""
        stagger = self.cluster.rank_stagger_sec if self.cluster.startup_policy == "stagger" else 0.0
        return [
            WorkerAssignment(
                rank=rank,
                node_ordinal=rank,
                startup_delay_sec=rank * stagger,
                task=self.build_task(
                    phase,
                    location,
                    endpoint,
                    checkpoint_dir,
                    world_size,
                    rank,
                    resume_from=resume_from,
                    extra_args=extra_args,
                ),
                log_path=self.rank_log_path(phase, rank),
            )
            for rank in range(world_size)
        ]

    def srun_argv(self, assignment: WorkerAssignment) -> list[str]:
        return [
            self.cluster.srun_command,
            "--nodes=1",
            "--ntasks=1",
            f"--relative={assignment.node_ordinal}",
            "--kill-on-bad-exit=1",
            *assignment.task.argv,
        ]

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def launch(
        self,
        phase: Phase,
        location: DatasetLocation,
        endpoint: RendezvousEndpoint,
        checkpoint_dir: Path,
        world_size: int,
        node_ordinal: int = 0,
        extra_args: Sequence[str] = (),
        *,
        resume_from: Path | None = None,
        dry_run: bool = False,
    ) -> ExitStatus:
        """Run *phase* to completion; raise :class:`TrainingProcessFailed` on any non-zero exit."""
        if world_size < 1:
            raise ValueError("world_size must be >= 1")
        if node_ordinal != 0:
            raise ValueError("launch must be dispatched from node 0, the rendezvous master")

        logger.info(
            "launch: phase=%s world_size=%d endpoint=%s batch_size=%d workers=%d",
            phase.value,
            world_size,
            endpoint.url,
            self.ctx.batch_size,
            self.ctx.workers,
        )
        started = self._clock()
        if world_size == 1:
            task = self.build_task(
                phase,
                location,
                endpoint,
                checkpoint_dir,
                world_size,
                rank=0,
                resume_from=resume_from,
                extra_args=extra_args,
            )
            returncodes = {task.rank: self._run_single(task, dry_run=dry_run)}
        else:
            assignments = self.build_assignments(
                phase,
                location,
                endpoint,
                checkpoint_dir,
                world_size,
                resume_from=resume_from,
                extra_args=extra_args,
            )
            returncodes = self._run_fan_out(assignments, endpoint, dry_run=dry_run)

        status = ExitStatus(
            phase=phase,
            returncodes=returncodes,
            duration_sec=self._clock() - started,
            dry_run=dry_run,
        )
        if not status.ok:
            raise TrainingProcessFailed(phase.value, returncodes)
        logger.info("launch: phase=%s finished in %.1fs", phase.value, status.duration_sec)
        return status

    def _env_for(self, task: TaskDescriptor) -> dict[str, str]:
        base = os.environ if self._base_env is None else self._base_env
        return {**base, **task.env}

    def _run_single(self, task: TaskDescriptor, *, dry_run: bool) -> int:
        if dry_run:
            logger.info("launch: dry-run rank %d: %s", task.rank, " ".join(task.argv))
            return 0
        proc = self._popen(list(task.argv), env=self._env_for(task))
        return proc.wait()

    def _run_fan_out(
        self,
        assignments: Sequence[WorkerAssignment],
        endpoint: RendezvousEndpoint,
        *,
        dry_run: bool,
    ) -> dict[int, int]:
        procs: dict[int, Any] = {}
        handles: list[IO[str]] = []
        delay_so_far = 0.0
        try:
            for assignment in sorted(assignments, key=lambda item: item.rank):
                wait = assignment.startup_delay_sec - delay_so_far
                if wait > 0:
                    # Heuristic stagger, not a barrier: slow node boots can still race.
                    logger.debug("launch: delaying rank %d by %.1fs", assignment.rank, wait)
                    early = self._stagger(wait, procs)
                    if early is not None:
                        return early
                    delay_so_far = assignment.startup_delay_sec
                if self.cluster.startup_policy == "probe" and assignment.rank == 1 and not dry_run:
                    self._wait_ready(
                        endpoint,
                        timeout_sec=self.cluster.probe_timeout_sec,
                        interval_sec=self.cluster.probe_interval_sec,
                    )

                argv = self.srun_argv(assignment)
                if dry_run:
                    logger.info("launch: dry-run rank %d: %s", assignment.rank, " ".join(argv))
                    continue

                assignment.log_path.parent.mkdir(parents=True, exist_ok=True)
                handle = assignment.log_path.open("w", encoding="utf-8")
                handles.append(handle)
                logger.info(
                    "launch: dispatching rank %d on node %d (log %s)",
                    assignment.rank,
                    assignment.node_ordinal,
                    assignment.log_path,
                )
                procs[assignment.rank] = self._popen(
                    argv,
                    env=self._env_for(assignment.task),
                    stdout=handle,
                    stderr=subprocess.STDOUT,
                )

            if dry_run:
                return {assignment.rank: 0 for assignment in assignments}
            return self._wait_all(procs)
        except BaseException:
            self._terminate(procs, {})
            raise
        finally:
            for handle in handles:
                handle.close()

    def _stagger(self, wait: float, procs: Mapping[int, Any]) -> dict[int, int] | None:
        """Sleep *wait* seconds in poll-sized slices, watching the ranks already started.

        Returns the collected exit codes if a started rank fails in the meantime.
        """
        remaining = wait
        while remaining > 0:
            step = min(self._poll_interval_sec, remaining)
            self._sleep(step)
            remaining -= step
            for rank, proc in procs.items():
                code = proc.poll()
                if code is None or code == 0:
                    continue
                logger.error(
                    "launch: rank %d exited with %d before all ranks started; stopping", rank, code
                )
                returncodes = {rank: code}
                self._terminate({r: p for r, p in procs.items() if r != rank}, returncodes)
                return returncodes
        return None

    def _wait_all(self, procs: Mapping[int, Any]) -> dict[int, int]:
        returncodes: dict[int, int] = {}
        while len(returncodes) < len(procs):
            for rank, proc in procs.items():
                if rank in returncodes:
                    continue
                code = proc.poll()
                if code is None:
                    continue
                returncodes[rank] = code
                if code != 0:
                    logger.error("launch: rank %d exited with %d; stopping remaining ranks", rank, code)
                    running = {r: p for r, p in procs.items() if r not in returncodes}
                    self._terminate(running, returncodes)
                    return returncodes
                logger.info("launch: rank %d finished", rank)
            if len(returncodes) < len(procs):
                self._sleep(self._poll_interval_sec)
        return returncodes

    def _terminate(self, procs: Mapping[int, Any], returncodes: dict[int, int]) -> None:
        for proc in procs.values():
            if proc.poll() is None:
                proc.terminate()
        for rank, proc in procs.items():
            try:
                proc.wait(timeout=_TERMINATE_GRACE_SEC)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            returncodes.setdefault(rank, proc.returncode)
