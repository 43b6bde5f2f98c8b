"""Job-launch orchestration for two-phase self-supervised training on Slurm."""

from importlib import metadata

__all__ = ["__version__"]

try:
    __version__ = metadata.version("ssl-cluster-launch")
except metadata.PackageNotFoundError:
    __version__ = "0.1.0"
