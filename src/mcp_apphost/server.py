"""MCP AppHost server implementation using FastMCP 2."""

import asyncio
import sys

from fastmcp import FastMCP
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.requests import Request
from starlette.responses import Response

from mcp_apphost.config import get_settings
from mcp_apphost.control_plane import ControlPlane
from mcp_apphost.engines.base import ContainerStatus
from mcp_apphost.managers.lifecycle_manager import ContainerInfo, LifecycleStats
from mcp_apphost.mcp_tools import (
    AppInput,
    ContainerRunInput,
    ContainerRunOutput,
    EventsOutput,
    HealthCheckResponse,
    LogsInput,
    LogsOutput,
    MetricsOutput,
    OperationOutput,
    QuickStartInput,
    SyncInput,
)
from mcp_apphost.utils import get_logger, setup_logging

mcp = FastMCP("MCP AppHost")
logger = get_logger(__name__)

_control_plane: ControlPlane | None = None


def get_control_plane() -> ControlPlane:
    """
    Get the process-wide control plane, building it from settings on first use.

    Returns:
        ControlPlane instance
    """
    global _control_plane
    if _control_plane is None:
        _control_plane = ControlPlane(get_settings())
    return _control_plane


def set_control_plane(plane: ControlPlane | None) -> None:
    """Replace the process-wide control plane."""
    global _control_plane
    _control_plane = plane


@mcp.tool()
async def health() -> HealthCheckResponse:
    """
    Health check endpoint to verify server status and engine connectivity.

    Returns:
        HealthCheckResponse with status and engine availability
    """
    plane = get_control_plane()
    service = plane.service

    if not service.is_enabled():
        return HealthCheckResponse(
            status="healthy",
            enabled=False,
            engine=service.engine_type,
            engine_available=False,
        )

    available = await service.is_available()
    version = ""
    if available:
        version = await service.factory.get_current_handler().get_version()
    else:
        logger.warning("Engine health check failed", extra={"engine": service.engine_type})

    return HealthCheckResponse(
        status="healthy" if available else "degraded",
        enabled=True,
        engine=service.engine_type,
        engine_available=available,
        engine_version=version,
    )


@mcp.tool()
async def container_run(input_data: ContainerRunInput) -> ContainerRunOutput:
    """
    Start the container for an application unless it is already running.

    Args:
        input_data: App ID and optional custom install/start commands

    Returns:
        ContainerRunOutput with container name and host port
    """
    logger.info("Running app container", extra={"app_id": input_data.app_id})

    try:
        result = await get_control_plane().operations.run(
            input_data.app_id,
            install_command=input_data.install_command,
            start_command=input_data.start_command,
        )
        return ContainerRunOutput.from_result(input_data.app_id, result)

    except Exception as e:
        logger.error(
            "Failed to run app container", extra={"app_id": input_data.app_id, "error": str(e)}
        )
        raise


@mcp.tool()
async def container_stop(input_data: AppInput) -> OperationOutput:
    """
    Stop an application's container and release its port.

    Args:
        input_data: App ID

    Returns:
        OperationOutput
    """
    logger.info("Stopping app container", extra={"app_id": input_data.app_id})
    result = await get_control_plane().operations.stop(input_data.app_id)
    return OperationOutput.from_result(result)


@mcp.tool()
async def container_restart(input_data: AppInput) -> ContainerRunOutput:
    """
    Restart a running application's container on the same port.

    Args:
        input_data: App ID

    Returns:
        ContainerRunOutput with container name and host port
    """
    logger.info("Restarting app container", extra={"app_id": input_data.app_id})

    try:
        result = await get_control_plane().operations.restart(input_data.app_id)
        return ContainerRunOutput.from_result(input_data.app_id, result)

    except Exception as e:
        logger.error(
            "Failed to restart app container",
            extra={"app_id": input_data.app_id, "error": str(e)},
        )
        raise


@mcp.tool()
async def container_quick_start(input_data: QuickStartInput) -> ContainerRunOutput:
    """
    Start an application's container, skipping dependency installation by default.

    Args:
        input_data: App ID and whether to skip installation

    Returns:
        ContainerRunOutput with container name and host port
    """
    logger.info("Quick-starting app container", extra={"app_id": input_data.app_id})

    try:
        result = await get_control_plane().operations.quick_start(
            input_data.app_id, skip_install=input_data.skip_install
        )
        return ContainerRunOutput.from_result(input_data.app_id, result)

    except Exception as e:
        logger.error(
            "Failed to quick-start app container",
            extra={"app_id": input_data.app_id, "error": str(e)},
        )
        raise


@mcp.tool()
async def container_sync(input_data: SyncInput) -> OperationOutput:
    """
    Signal the dev server that files changed.

    Args:
        input_data: App ID and changed file paths

    Returns:
        OperationOutput with synced and failed files
    """
    result = await get_control_plane().operations.sync(input_data.app_id, input_data.file_paths)
    return OperationOutput.from_result(result)


@mcp.tool()
async def container_cleanup(input_data: AppInput) -> OperationOutput:
    """
    Remove an application's container and dependency cache volume.

    Args:
        input_data: App ID

    Returns:
        OperationOutput
    """
    logger.info("Cleaning up app container", extra={"app_id": input_data.app_id})
    result = await get_control_plane().operations.cleanup(input_data.app_id)
    return OperationOutput.from_result(result)


@mcp.tool()
async def container_status(input_data: AppInput) -> ContainerStatus:
    """
    Get the status of an application's container.

    Args:
        input_data: App ID

    Returns:
        ContainerStatus including readiness and dependency state
    """
    return await get_control_plane().operations.status(input_data.app_id)


@mcp.tool()
async def container_lifecycle(input_data: AppInput) -> ContainerInfo:
    """
    Get the lifecycle view of an application's container.

    Args:
        input_data: App ID

    Returns:
        ContainerInfo with allocated port, idle time and starting flag
    """
    return await get_control_plane().operations.lifecycle_info(input_data.app_id)


@mcp.tool()
async def container_logs(input_data: LogsInput) -> LogsOutput:
    """
    Get recent log records of an application's container.

    Args:
        input_data: App ID, tail size, since and timestamp options

    Returns:
        LogsOutput with parsed log records
    """
    records = await get_control_plane().operations.logs(
        input_data.app_id,
        tail=input_data.tail,
        since=input_data.since,
        timestamps=input_data.timestamps,
    )
    return LogsOutput(app_id=input_data.app_id, records=records)


@mcp.tool()
async def container_events(input_data: AppInput) -> EventsOutput:
    """
    Get runtime events of an application's container over the last 24 hours.

    Args:
        input_data: App ID

    Returns:
        EventsOutput
    """
    events = await get_control_plane().operations.events(input_data.app_id)
    return EventsOutput(app_id=input_data.app_id, events=events)


@mcp.tool()
async def lifecycle_stats() -> LifecycleStats:
    """
    Get lifecycle manager statistics.

    Returns:
        LifecycleStats snapshot
    """
    return get_control_plane().operations.lifecycle_stats()


@mcp.tool()
async def metrics() -> MetricsOutput:
    """
    Get Prometheus metrics.

    Returns:
        MetricsOutput in Prometheus exposition format
    """
    data = get_control_plane().metrics.get_metrics()
    return MetricsOutput(metrics=data.decode("utf-8"))


@mcp.custom_route("/preview", methods=["GET"])
async def preview_info(request: Request) -> Response:
    """Describe the preview proxy."""
    return await get_control_plane().proxy.info(request)


@mcp.custom_route("/preview/{app_id}/{rest:path}", methods=["GET"])
async def preview(request: Request) -> Response:
    """Proxy a preview request to the app's dev server."""
    return await get_control_plane().proxy.handle(request)


@mcp.custom_route("/preview/{app_id}", methods=["GET"])
async def preview_root(request: Request) -> Response:
    """Proxy the root of an app's preview."""
    return await get_control_plane().proxy.handle(request)


@mcp.custom_route("/metrics", methods=["GET"])
async def metrics_endpoint(request: Request) -> Response:
    """Expose Prometheus metrics for scraping."""
    return Response(get_control_plane().metrics.get_metrics(), media_type=CONTENT_TYPE_LATEST)


async def serve() -> None:
    """Start the control plane, run the MCP server, and stop the control plane on exit."""
    settings = get_settings()
    plane = get_control_plane()

    # Map config transport mode to FastMCP transport parameter
    transport_map = {
        "stdio": "stdio",
        "sse": "sse",
        "streamable-http": "streamable-http",
    }

    run_kwargs = {"transport": transport_map[settings.transport_mode]}

    # Add HTTP-specific settings for HTTP-based transports
    if settings.transport_mode in ("sse", "streamable-http"):
        run_kwargs["host"] = settings.host
        run_kwargs["port"] = settings.port
        run_kwargs["path"] = settings.path

    await plane.start()
    try:
        await mcp.run_async(**run_kwargs)
    finally:
        await plane.stop()


def main() -> None:
    """Main entry point for the MCP AppHost server."""
    settings = get_settings()

    setup_logging(log_level=settings.log_level, log_format=settings.log_format)

    logger.info(
        "Starting server",
        extra={
            "transport": settings.transport_mode,
            "host": settings.host if settings.transport_mode != "stdio" else "N/A",
            "port": settings.port if settings.transport_mode != "stdio" else "N/A",
            "containerization_enabled": settings.enabled,
            "engine": settings.engine,
        },
    )

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
