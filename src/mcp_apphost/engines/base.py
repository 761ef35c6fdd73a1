"""Engine contract and the result types shared by every container engine."""

from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

CONTAINER_PREFIX = "apphost-app-"
APP_ID_LABEL = "com.apphost.app_id"


def container_name_for(app_id: str) -> str:
    """Deterministic container name for an application."""
    return f"{CONTAINER_PREFIX}{app_id}"


def volume_name_for(app_id: str) -> str:
    """Deterministic dependency-cache volume name for an application."""
    return f"{CONTAINER_PREFIX}{app_id}-store"


def app_id_from_container_name(name: str) -> Optional[str]:
    """Recover the application ID from a container name, if it is one of ours."""
    name = name.lstrip("/")
    if not name.startswith(CONTAINER_PREFIX):
        return None
    app_id = name[len(CONTAINER_PREFIX):]
    return app_id or None


class ContainerState(str, Enum):
    """Lifecycle state of an application's container."""

    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    STOPPING = "stopping"
    STOPPED = "stopped"

    @classmethod
    def from_runtime(cls, status: Optional[str], exit_code: Optional[int] = None) -> "ContainerState":
        """Map a runtime status string (docker/podman ``State.Status``) to a state."""
        if not status:
            return cls.ABSENT
        status = status.lower()
        if status in ("running", "restarting", "paused"):
            return cls.RUNNING
        if status in ("created", "configured", "initialized"):
            return cls.STARTING
        if status == "removing":
            return cls.STOPPING
        if status in ("exited", "stopped", "dead"):
            if status == "dead" or (exit_code not in (None, 0, 137, 143)):
                return cls.CRASHED
            return cls.STOPPED
        return cls.STOPPED


class VolumeMount(BaseModel):
    """Extra bind mount requested by a caller."""

    host: str = Field(..., description="Host path")
    container: str = Field(..., description="Path inside the container")
    read_only: bool = Field(default=False, description="Mount read-only")


class RunContainerOptions(BaseModel):
    """Options for running an application container."""

    app_id: str
    app_path: str = Field(..., description="Application directory as seen by this process")
    port: Optional[int] = Field(None, description="Host port; engine default when omitted")
    skip_install: bool = Field(default=False, description="Skip dependency installation")
    cpu_limit: Optional[str] = Field(None, description="CPU limit override, e.g. '0.5'")
    memory_limit: Optional[str] = Field(None, description="Memory limit override, e.g. '512m'")
    environment: Dict[str, str] = Field(default_factory=dict)
    volume_mounts: List[VolumeMount] = Field(default_factory=list)
    install_command: Optional[str] = Field(None, description="Custom dependency install command")
    start_command: Optional[str] = Field(None, description="Custom dev server command")


class SyncFilesOptions(BaseModel):
    """Options for syncing changed files into a running container."""

    app_id: str
    file_paths: Optional[List[str]] = None


class OperationResult(BaseModel):
    """Result of a mutating container operation."""

    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, message: str, data: Optional[Dict[str, Any]] = None) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str, error: Optional[str] = None) -> "OperationResult":
        return cls(success=False, message=message, error=error)


class ContainerStatus(BaseModel):
    """Observed status of an application's container."""

    app_id: str
    is_running: bool = False
    is_ready: bool = False
    has_dependencies_installed: bool = False
    container_name: Optional[str] = None
    port: Optional[int] = None
    status: str = Field(default="stopped", description="running, stopped, starting or error")
    state: ContainerState = ContainerState.ABSENT
    error: Optional[str] = None

    @classmethod
    def absent(cls, app_id: str, error: Optional[str] = None) -> "ContainerStatus":
        return cls(app_id=app_id, status="error" if error else "stopped", error=error)


class DiscoveredContainer(BaseModel):
    """A container found on the runtime that belongs to this control plane."""

    app_id: str
    container_name: str
    port: Optional[int] = None
    is_running: bool = False
    status: str = ""


@runtime_checkable
class ContainerEngine(Protocol):
    """Operations every container engine handler provides."""

    engine_type: str
    image: str
    default_port: int

    async def initialize(self) -> None: ...

    async def is_available(self) -> bool: ...

    async def get_version(self) -> str: ...

    async def get_engine_info(self) -> Dict[str, Any]: ...

    def get_container_name(self, app_id: str) -> str: ...

    def get_volume_name(self, app_id: str) -> str: ...

    async def run_container(self, options: RunContainerOptions) -> OperationResult: ...

    async def stop_container(self, app_id: str) -> OperationResult: ...

    async def get_container_status(self, app_id: str) -> ContainerStatus: ...

    async def container_exists(self, app_id: str) -> bool: ...

    async def is_container_running(self, app_id: str) -> bool: ...

    async def is_container_ready(self, app_id: str) -> bool: ...

    async def has_dependencies_installed(self, app_id: str) -> bool: ...

    async def sync_files_to_container(self, options: SyncFilesOptions) -> OperationResult: ...

    async def exec_in_container(self, app_id: str, command: List[str]) -> OperationResult: ...

    async def get_container_logs(self, app_id: str, lines: int = 100) -> str: ...

    async def get_logs(
        self,
        app_id: str,
        tail: Optional[int] = None,
        since: Optional[str] = None,
        timestamps: bool = False,
    ) -> str: ...

    def stream_logs(
        self,
        app_id: str,
        follow: bool = True,
        tail: Optional[int] = None,
        since: Optional[str] = None,
        timestamps: bool = False,
    ) -> AsyncIterator[str]: ...

    async def get_events(self, app_id: str) -> List[Dict[str, Any]]: ...

    async def remove_container(self, app_id: str, force: bool = False) -> OperationResult: ...

    async def cleanup_volumes(self, app_id: str) -> OperationResult: ...

    async def list_containers(self) -> List[DiscoveredContainer]: ...
