"""Manager modules for container lifecycle and application operations."""

from .app_operations import AppOperations
from .app_resolver import AppInfo, AppResolver, DirectoryAppResolver
from .containerization_service import ContainerizationService
from .lifecycle_manager import (
    ContainerInfo,
    ContainerLifecycleManager,
    LifecycleStats,
    ReapStats,
)

__all__ = [
    "AppInfo",
    "AppOperations",
    "AppResolver",
    "ContainerInfo",
    "ContainerLifecycleManager",
    "ContainerizationService",
    "DirectoryAppResolver",
    "LifecycleStats",
    "ReapStats",
]
