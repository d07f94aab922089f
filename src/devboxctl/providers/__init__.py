"""Provider interfaces for devboxctl."""
from __future__ import annotations

from .docker import (
    ContainerInfo,
    DockerError,
    DockerProvider,
    DockerUnavailableError,
    diagnose_docker_runtime,
)
from .hooks import HookError, HookExecutor, HookMode, HookResult

__all__ = [
    "ContainerInfo",
    "DockerError",
    "DockerProvider",
    "DockerUnavailableError",
    "HookError",
    "HookExecutor",
    "HookMode",
    "HookResult",
    "diagnose_docker_runtime",
]
