"""End-to-end job pipeline: stage, rendezvous, pretrain, lincls, archive."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ssllaunch.archive import ArchivedOutput, ArchiveSkipped, OutputArchiver
from ssllaunch.config.schemas import LauncherConfig
from ssllaunch.context import JobContext
from ssllaunch.errors import JobContextError, NodeLocalDataRoot, TrainingProcessFailed
from ssllaunch.launcher import ExitStatus, ProcessLauncher
from ssllaunch.rendezvous import RendezvousCoordinator, RendezvousEndpoint
from ssllaunch.resume import CheckpointResumeGuard, Phase, ResumeDecision, checkpoint_for
from ssllaunch.staging import DatasetLocation, DatasetStager
from ssllaunch.tracking import NullTracker, Tracker
from ssllaunch.utils.metadata import generate_meta, write_meta_json

__all__ = ["PHASES", "JobResult", "JobSpec", "run_job"]

logger = logging.getLogger(__name__)

# Order matters: lincls reads the pretrain checkpoint.
PHASES: tuple[Phase, ...] = (Phase.PRETRAIN, Phase.LINCLS)


@dataclass(frozen=True)
class JobSpec:
    """What the user asked for on the command line."""

    dataset: str
    train_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class JobResult:
    location: DatasetLocation
    endpoint: RendezvousEndpoint
    decisions: tuple[ResumeDecision, ...]
    phases: tuple[ExitStatus, ...]
    archive: ArchivedOutput | ArchiveSkipped | None
    meta_path: Path | None = None
    dry_run: bool = False


def run_job(
    spec: JobSpec,
    ctx: JobContext,
    config: LauncherConfig,
    *,
    tracker: Tracker | None = None,
    stager: DatasetStager | None = None,
    coordinator: RendezvousCoordinator | None = None,
    launcher: ProcessLauncher | None = None,
    archiver: OutputArchiver | None = None,
    dry_run: bool = False,
) -> JobResult:
    """Run both training phases for one scheduler invocation.

    Any failure propagates; archival only happens after both phases exit 0.
    In dry-run mode nothing is copied, launched or archived.
    """
    tracker = tracker or NullTracker()
    _check_dispatch_node(ctx)
    stager = stager or DatasetStager(ctx.data_root, config.staging)
    coordinator = coordinator or RendezvousCoordinator(
        backend=config.cluster.backend, master_port=config.cluster.master_port
    )
    launcher = launcher or ProcessLauncher(ctx, config)
    archiver = archiver or OutputArchiver(
        retries=config.archive.retries, backoff_sec=config.archive.retry_backoff_sec
    )

    # Dataset and endpoint are both fixed before any worker is built.
    location = stager.plan(spec.dataset) if dry_run else stager.stage(spec.dataset)
    endpoint = coordinator.establish(ctx.num_nodes)

    tracker.log_params(
        {
            "dataset": spec.dataset,
            "data_root": str(location.root),
            "num_nodes": ctx.num_nodes,
            "accelerators_per_node": ctx.accelerators_per_node,
            "batch_size": ctx.batch_size,
            "workers": ctx.workers,
            "restart_count": ctx.restart_count,
            "backend": endpoint.backend,
            "train_args": list(spec.train_args),
        }
    )

    meta_path: Path | None = None
    if not dry_run:
        ctx.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        meta = generate_meta(
            ctx=ctx, dataset=spec.dataset, location=location, endpoint=endpoint
        )
        meta_path = write_meta_json(ctx.checkpoint_dir, meta)
        tracker.log_artifact(meta_path, artifact_path="job")

    guard = CheckpointResumeGuard(ctx.restart_count)
    # Evaluated once per invocation; later phases only look for their own checkpoint.
    invocation = guard.evaluate(checkpoint_for(Phase.PRETRAIN, ctx.checkpoint_dir))
    decisions: list[ResumeDecision] = []
    statuses: list[ExitStatus] = []
    for phase in PHASES:
        if phase is Phase.PRETRAIN:
            decision = invocation
        else:
            decision = guard.follow_up(checkpoint_for(phase, ctx.checkpoint_dir))
        decisions.append(decision)
        try:
            status = launcher.launch(
                phase,
                location,
                endpoint,
                ctx.checkpoint_dir,
                ctx.world_size,
                ctx.node_id,
                spec.train_args,
                resume_from=decision.resume_path,
                dry_run=dry_run,
            )
        except TrainingProcessFailed:
            tracker.log_metrics({f"{phase.value}/succeeded": 0.0}, step=ctx.restart_count)
            raise
        statuses.append(status)
        tracker.log_metrics(
            {f"{phase.value}/duration_sec": status.duration_sec, f"{phase.value}/succeeded": 1.0},
            step=ctx.restart_count,
        )

    archive: ArchivedOutput | ArchiveSkipped | None = None
    if not dry_run:
        archive = archiver.archive(ctx.checkpoint_dir, ctx.durable_dir)

    return JobResult(
        location=location,
        endpoint=endpoint,
        decisions=tuple(decisions),
        phases=tuple(statuses),
        archive=archive,
        meta_path=meta_path,
        dry_run=dry_run,
    )


def _check_dispatch_node(ctx: JobContext) -> None:
    """Fail before anything is staged when this invocation cannot drive the job."""
    if ctx.node_id != 0:
        raise JobContextError(
            f"SLURM_NODEID={ctx.node_id}: the launcher runs once, on node 0 of the allocation"
        )
    if ctx.is_multi_node and ctx.data_root_is_node_local:
        raise NodeLocalDataRoot(
            f"{ctx.num_nodes}-node job would stage into node-local {ctx.data_root}; "
            "set staging.data_root or $DATA_ROOT to storage every node can read"
        )
