"""Staging strategy registry."""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from ssllaunch.errors import UnsupportedSource

T = TypeVar("T")


class RegistryError(ValueError):
    """Raised when a stager is registered twice or under an empty name."""


_STAGER_REGISTRY: dict[str, type[object]] = {}


def _normalize_name(name: str) -> str:
    normalized = name.strip().lower()
    if not normalized:
        raise RegistryError("Registry name must be non-empty.")
    return normalized


def register_stager(name: str) -> Callable[[type[T]], type[T]]:
    """Register a staging strategy under a source key."""
    normalized = _normalize_name(name)

    def decorator(cls: type[T]) -> type[T]:
        if normalized in _STAGER_REGISTRY:
            available = ", ".join(sorted(_STAGER_REGISTRY)) or "none"
            raise RegistryError(
                f"Stager '{normalized}' is already registered. Available: {available}."
            )
        _STAGER_REGISTRY[normalized] = cls
        return cls

    return decorator


def get_stager(name: str) -> type[object]:
    """Return the stager class for a source key."""
    normalized = _normalize_name(name)
    if normalized not in _STAGER_REGISTRY:
        available = ", ".join(sorted(_STAGER_REGISTRY)) or "none"
        raise UnsupportedSource(f"No stager for source '{normalized}'. Available: {available}.")
    return _STAGER_REGISTRY[normalized]


def available_stagers() -> list[str]:
    """Return sorted names of registered stagers."""
    return sorted(_STAGER_REGISTRY)
