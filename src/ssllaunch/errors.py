"""Exception taxonomy for job-launch failures."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path


class LaunchError(RuntimeError):
    """Base class for fatal launch-layer failures."""

    exit_code = 1
    kind = "Launch"


class JobContextError(LaunchError):
    """Raised when the scheduler environment cannot be parsed."""

    exit_code = 2
    kind = "Environment"


class StagingError(LaunchError):
    """Raised when a dataset cannot be staged onto local storage."""

    kind = "Staging"


class InvalidDatasetIdentifier(StagingError):
    """The identifier is neither a known corpus nor an existing path."""

    exit_code = 2

    def __init__(self, identifier: str) -> None:
        super().__init__(
            f"dataset '{identifier}' is not a known corpus, directory or archive file"
        )
        self.identifier = identifier


class UnsupportedExtension(StagingError):
    """A single-file dataset has an extension that cannot be extracted."""

    exit_code = 2

    def __init__(self, path: Path, supported: tuple[str, ...]) -> None:
        allowed = ", ".join(f".{ext}" for ext in supported)
        super().__init__(f"unsupported archive extension for {path} (expected one of {allowed})")
        self.path = path


class UnsupportedSource(StagingError):
    """The source form was recognised but no stager is registered for it."""

    exit_code = 2


class MissingSource(StagingError):
    """Files the stager needs are absent or could not be fetched."""


class NodeLocalDataRoot(StagingError):
    """A multi-node job would stage onto storage only the launch node can see."""

    exit_code = 2


class RendezvousUnavailable(LaunchError):
    """No usable master address/port could be selected."""

    kind = "Rendezvous"


class TrainingProcessFailed(LaunchError):
    """At least one launched training process exited non-zero."""

    kind = "Training"

    def __init__(self, phase: str, returncodes: Mapping[int, int]) -> None:
        failed = {rank: code for rank, code in sorted(returncodes.items()) if code != 0}
        detail = ", ".join(f"rank {rank} exited {code}" for rank, code in failed.items())
        super().__init__(f"phase '{phase}' failed: {detail}")
        self.phase = phase
        self.returncodes = dict(returncodes)
        self.failed_ranks = tuple(failed)


class ArchiveFailed(LaunchError):
    """Copying outputs to durable storage kept failing after all retries."""

    kind = "Archive"
