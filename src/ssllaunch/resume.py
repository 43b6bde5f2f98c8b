"""Cold-start vs. resume decision after scheduler preemption."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

__all__ = [
    "Checkpoint",
    "CheckpointResumeGuard",
    "Phase",
    "RestartState",
    "ResumeDecision",
    "ResumeState",
    "ResumeWarning",
    "checkpoint_for",
]

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    PRETRAIN = "pretrain"
    LINCLS = "lincls"


CHECKPOINT_FILENAMES: dict[Phase, str] = {
    Phase.PRETRAIN: "checkpoint_latest",
    Phase.LINCLS: "lincls_checkpoint_latest",
}


class ResumeState(str, Enum):
    FRESH = "fresh"
    RESUMING_WITH_CHECKPOINT = "resuming_with_checkpoint"
    RESUMING_WITHOUT_CHECKPOINT = "resuming_without_checkpoint"


class ResumeWarning(UserWarning):
    """A restarted job found no checkpoint; it continues as a fresh run."""


@dataclass(frozen=True)
class Checkpoint:
    """Externally owned training state; only its existence is checked here."""

    directory: Path
    filename: str
    phase: Phase

    @property
    def path(self) -> Path:
        return self.directory / self.filename

    def exists(self) -> bool:
        return self.path.is_file()


def checkpoint_for(phase: Phase, directory: Path) -> Checkpoint:
    return Checkpoint(directory=directory, filename=CHECKPOINT_FILENAMES[phase], phase=phase)


@dataclass(frozen=True)
class RestartState:
    restart_count: int
    checkpoint_present: bool


@dataclass(frozen=True)
class ResumeDecision:
    state: ResumeState
    checkpoint: Checkpoint
    restart: RestartState
    warning: ResumeWarning | None = None

    @property
    def resume_path(self) -> Path | None:
        """Checkpoint to pass as ``--resume``, if any."""
        if self.state is ResumeState.RESUMING_WITH_CHECKPOINT:
            return self.checkpoint.path
        return None


class CheckpointResumeGuard:
    """Classify an invocation from the restart count and the checkpoint on disk.

    Nothing is remembered between invocations: a requeued job builds a new
    guard from the new ``SLURM_RESTART_COUNT``.
    """

    def __init__(self, restart_count: int) -> None:
        if restart_count < 0:
            raise ValueError("restart_count must be >= 0")
        self.restart_count = restart_count

    def evaluate(self, checkpoint: Checkpoint) -> ResumeDecision:
        restart = RestartState(
            restart_count=self.restart_count,
            checkpoint_present=checkpoint.exists(),
        )

        if restart.restart_count == 0:
            if restart.checkpoint_present:
                logger.debug(
                    "resume: first attempt but %s already exists; starting fresh", checkpoint.path
                )
            return ResumeDecision(ResumeState.FRESH, checkpoint, restart)

        if restart.checkpoint_present:
            logger.info(
                "resume: restart %d, resuming %s from %s",
                restart.restart_count,
                checkpoint.phase.value,
                checkpoint.path,
            )
            return ResumeDecision(ResumeState.RESUMING_WITH_CHECKPOINT, checkpoint, restart)

        warning = ResumeWarning(
            f"restart {restart.restart_count} of phase '{checkpoint.phase.value}' found no "
            f"checkpoint at {checkpoint.path}; continuing with fresh initialization"
        )
        logger.warning(
            "resume warning\n  %s\n  phase=%s restart_count=%d checkpoint=%s",
            warning,
            checkpoint.phase.value,
            restart.restart_count,
            checkpoint.path,
            extra={
                "fields": {
                    "event": "resume_without_checkpoint",
                    "phase": checkpoint.phase.value,
                    "restart_count": restart.restart_count,
                    "checkpoint": str(checkpoint.path),
                }
            },
        )
        return ResumeDecision(ResumeState.RESUMING_WITHOUT_CHECKPOINT, checkpoint, restart, warning)

    def follow_up(self, checkpoint: Checkpoint) -> ResumeDecision:
        """Resume decision for a later phase, without re-evaluating the invocation.

        A missing checkpoint only means the phase never got that far, so it
        starts fresh and nothing is logged at warning level.
        """
        restart = RestartState(
            restart_count=self.restart_count,
            checkpoint_present=checkpoint.exists(),
        )
        if restart.restart_count > 0 and restart.checkpoint_present:
            logger.info(
                "resume: restart %d, resuming %s from %s",
                restart.restart_count,
                checkpoint.phase.value,
                checkpoint.path,
            )
            return ResumeDecision(ResumeState.RESUMING_WITH_CHECKPOINT, checkpoint, restart)
        return ResumeDecision(ResumeState.FRESH, checkpoint, restart)
