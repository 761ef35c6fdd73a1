"""MCP tool input/output models for application container management."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from mcp_apphost import __version__
from mcp_apphost.engines.base import OperationResult
from mcp_apphost.utils.log_records import LogRecord


class AppInput(BaseModel):
    """Input model for tools acting on one application."""

    app_id: str = Field(..., description="Application ID")

    @field_validator("app_id", mode="before")
    @classmethod
    def _stringify_app_id(cls, value: Any) -> Any:
        # Numeric IDs are accepted and treated as their decimal string
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class ContainerRunInput(AppInput):
    """Input model for container_run tool."""

    install_command: Optional[str] = Field(None, description="Custom dependency install command")
    start_command: Optional[str] = Field(None, description="Custom dev server command")


class QuickStartInput(AppInput):
    """Input model for container_quick_start tool."""

    skip_install: bool = Field(default=True, description="Reuse installed dependencies")


class SyncInput(AppInput):
    """Input model for container_sync tool."""

    file_paths: Optional[List[str]] = Field(
        None, description="Changed files relative to the app directory"
    )


class LogsInput(AppInput):
    """Input model for container_logs tool."""

    tail: Optional[int] = Field(default=200, description="Number of trailing lines (all if null)")
    since: Optional[str] = Field(None, description="Unix seconds or ISO-8601 timestamp")
    timestamps: bool = Field(default=True, description="Include runtime timestamps")


class ContainerRunOutput(BaseModel):
    """Output model for tools that start a container."""

    success: bool
    message: str
    app_id: str
    container_name: Optional[str] = None
    port: Optional[int] = None

    @classmethod
    def from_result(cls, app_id: str, result: OperationResult) -> "ContainerRunOutput":
        data = result.data or {}
        return cls(
            success=result.success,
            message=result.message,
            app_id=app_id,
            container_name=data.get("container_name"),
            port=data.get("port"),
        )


class OperationOutput(BaseModel):
    """Output model for mutating tools."""

    success: bool
    message: str
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_result(cls, result: OperationResult) -> "OperationOutput":
        return cls(**result.model_dump())


class LogsOutput(BaseModel):
    """Output model for container_logs tool."""

    app_id: str
    records: List[LogRecord] = Field(default_factory=list)


class EventsOutput(BaseModel):
    """Output model for container_events tool."""

    app_id: str
    events: List[Dict[str, Any]] = Field(default_factory=list)


class MetricsOutput(BaseModel):
    """Output model for metrics tool."""

    metrics: str = Field(..., description="Prometheus exposition format")


class HealthCheckResponse(BaseModel):
    """Health check response model."""

    status: str
    enabled: bool
    engine: str
    engine_available: bool
    engine_version: str = ""
    version: str = __version__
