"""Job summary formatting utilities."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ssllaunch.archive import ArchivedOutput, ArchiveSkipped
from ssllaunch.context import JobContext

if TYPE_CHECKING:
    from ssllaunch.job import JobResult, JobSpec


def _archive_summary(result: JobResult) -> dict[str, Any] | None:
    archive = result.archive
    if isinstance(archive, ArchivedOutput):
        return {
            "status": "archived",
            "destination": str(archive.destination),
            "copied": len(archive.copied),
            "unchanged": len(archive.unchanged),
        }
    if isinstance(archive, ArchiveSkipped):
        return {"status": "skipped", "reason": archive.reason}
    return None


def format_job_summary(
    *,
    ctx: JobContext,
    spec: JobSpec,
    result: JobResult,
    json_output: bool = False,
) -> str | dict[str, Any]:
    """Return the job outcome as either human text or JSON-ready data."""
    summary: dict[str, Any] = {
        "job_id": ctx.job_id,
        "job_name": ctx.job_name,
        "dry_run": result.dry_run,
        "dataset": {
            "identifier": spec.dataset,
            "root": str(result.location.root),
            "kind": result.location.kind.value,
        },
        "rendezvous": {
            "url": result.endpoint.url,
            "backend": result.endpoint.backend,
        },
        "resources": {
            "num_nodes": ctx.num_nodes,
            "accelerators_per_node": ctx.accelerators_per_node,
            "batch_size": ctx.batch_size,
            "workers": ctx.workers,
        },
        "restart_count": ctx.restart_count,
        "checkpoint_dir": str(ctx.checkpoint_dir),
        "phases": [
            {
                "phase": status.phase.value,
                "resume": decision.state.value,
                "duration_sec": round(status.duration_sec, 3),
                "returncodes": {str(rank): code for rank, code in status.returncodes.items()},
            }
            for decision, status in zip(result.decisions, result.phases, strict=False)
        ],
        "archive": _archive_summary(result),
    }

    if json_output:
        return summary

    header = "Planned job:" if result.dry_run else "Completed job:"
    lines = [
        header,
        f"  Job: {ctx.job_name} ({ctx.job_id}) restart_count={ctx.restart_count}",
        f"  Dataset: {spec.dataset} -> {result.location.root} ({result.location.kind.value})",
        f"  Rendezvous: {result.endpoint.url} backend={result.endpoint.backend}",
        (
            "  Resources: "
            f"nodes={ctx.num_nodes} accelerators_per_node={ctx.accelerators_per_node} "
            f"batch_size={ctx.batch_size} workers={ctx.workers}"
        ),
        f"  Checkpoints: {ctx.checkpoint_dir}",
    ]
    for phase in summary["phases"]:
        lines.append(
            f"  Phase {phase['phase']}: resume={phase['resume']} "
            f"duration={phase['duration_sec']:.2f}s"
        )
    archive = summary["archive"]
    if archive is not None:
        if archive["status"] == "archived":
            lines.append(
                f"  Archive: {archive['destination']} copied={archive['copied']} "
                f"unchanged={archive['unchanged']}"
            )
        else:
            lines.append(f"  Archive: skipped ({archive['reason']})")
    return "\n".join(lines)
