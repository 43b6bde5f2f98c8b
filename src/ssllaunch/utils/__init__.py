"""Shared utilities for ssllaunch."""

from ssllaunch.utils.logging import configure_logging
from ssllaunch.utils.metadata import generate_meta, scheduler_env_snapshot, write_meta_json
from ssllaunch.utils.summary import format_job_summary

__all__ = [
    "configure_logging",
    "format_job_summary",
    "generate_meta",
    "scheduler_env_snapshot",
    "write_meta_json",
]
