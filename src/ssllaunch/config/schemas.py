"""Pydantic schema models for launcher configuration."""

from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_IMAGENETTE_URL = "https://s3.amazonaws.com/fast-ai-imageclas/imagenette2-160.tgz"
DEFAULT_VALPREP_URL = (
    "https://raw.githubusercontent.com/soumith/imagenetloader.torch/master/valprep.sh"
)


class RunSectionConfig(BaseModel):
    """Job naming used when the scheduler does not provide one."""

    name: str = "moco"
    notes: str | None = None

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        validate_default=True,
    )


class ClusterConfig(BaseModel):
    """Per-node resources and rendezvous behaviour."""

    accelerators_per_node: int | None = Field(None, ge=1)
    per_accelerator_batch: int = Field(48, ge=1)
    backend: Literal["nccl", "gloo"] = "nccl"
    master_port: int | None = Field(None, ge=1, le=65535)
    startup_policy: Literal["stagger", "probe"] = "stagger"
    rank_stagger_sec: float = Field(5.0, ge=0.0)
    probe_timeout_sec: float = Field(600.0, gt=0.0)
    probe_interval_sec: float = Field(2.0, gt=0.0)
    srun_command: str = "srun"

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        validate_default=True,
    )

    @model_validator(mode="after")
    def check_probe_timing(self) -> Self:
        if self.probe_interval_sec > self.probe_timeout_sec:
            raise ValueError("probe_interval_sec cannot exceed probe_timeout_sec")
        return self


class StagingConfig(BaseModel):
    """Where datasets come from and where they land locally."""

    data_root: str | None = None
    imagenet_source_dir: str | None = None
    imagenette_url: str = DEFAULT_IMAGENETTE_URL
    valprep_url: str = DEFAULT_VALPREP_URL
    download_retries: int = Field(3, ge=1)
    retry_backoff_sec: float = Field(5.0, ge=0.0)
    download_timeout_sec: float = Field(60.0, gt=0.0)

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        validate_default=True,
    )


class TrainingConfig(BaseModel):
    """Commands for the external training programs and their output paths."""

    pretrain_command: tuple[str, ...] = ("python", "main_moco.py")
    lincls_command: tuple[str, ...] = ("python", "main_lincls.py")
    checkpoint_dir: str | None = None
    log_dir: str | None = None

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        validate_default=True,
    )

    @model_validator(mode="after")
    def check_commands(self) -> Self:
        if not self.pretrain_command or not self.lincls_command:
            raise ValueError("training commands must be non-empty")
        return self


class ArchiveConfig(BaseModel):
    """Durable-storage mirror settings."""

    durable_dir: str | None = None
    retries: int = Field(3, ge=1)
    retry_backoff_sec: float = Field(2.0, ge=0.0)

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        validate_default=True,
    )


class MLflowConfig(BaseModel):
    """MLflow tracking integration options."""

    enabled: bool = False
    tracking_uri: str = "file:./mlruns"
    experiment: str = "ssl-cluster-launch"
    run_name: str | None = None

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        validate_default=True,
    )


class LoggingConfig(BaseModel):
    """Structured logging settings for stdout/file output."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = True
    log_to_file: bool = True
    file_name: str = "launcher.log"

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        validate_default=True,
    )


class LauncherConfig(BaseModel):
    """Top-level schema; every section has defaults so an empty file is valid."""

    schema_version: int = Field(1, ge=1)
    run: RunSectionConfig = Field(default_factory=RunSectionConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    staging: StagingConfig = Field(default_factory=StagingConfig)
    training: TrainingConfig = Field(default_factory=TrainingConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    mlflow: MLflowConfig = Field(default_factory=MLflowConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        validate_default=True,
    )
