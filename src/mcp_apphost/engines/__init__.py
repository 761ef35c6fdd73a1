"""Container engine handlers for MCP AppHost."""

from mcp_apphost.engines.api_handler import DockerApiHandler
from mcp_apphost.engines.base import (
    ContainerEngine,
    ContainerState,
    ContainerStatus,
    DiscoveredContainer,
    OperationResult,
    RunContainerOptions,
    SyncFilesOptions,
    VolumeMount,
)
from mcp_apphost.engines.docker_handler import DockerHandler
from mcp_apphost.engines.factory import DEFAULT_REGISTRY, ContainerFactory
from mcp_apphost.engines.podman_handler import PodmanHandler
from mcp_apphost.engines.readiness import LogMarkerReadiness, ReadinessMatcher

__all__ = [
    "ContainerEngine",
    "ContainerFactory",
    "ContainerState",
    "ContainerStatus",
    "DEFAULT_REGISTRY",
    "DiscoveredContainer",
    "DockerApiHandler",
    "DockerHandler",
    "LogMarkerReadiness",
    "OperationResult",
    "PodmanHandler",
    "ReadinessMatcher",
    "RunContainerOptions",
    "SyncFilesOptions",
    "VolumeMount",
]
