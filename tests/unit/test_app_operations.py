"""Tests for AppOperations."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mcp_apphost.engines.base import ContainerState, ContainerStatus, OperationResult
from mcp_apphost.managers.app_operations import AppOperations
from mcp_apphost.managers.app_resolver import AppInfo
from mcp_apphost.managers.lifecycle_manager import ContainerLifecycleManager
from mcp_apphost.utils.audit_logger import AuditEventType
from mcp_apphost.utils.exceptions import (
    AlreadyStartingError,
    AppNotFoundError,
    ContainerizationDisabledError,
    ContainerNotRunningError,
    ContainerStartError,
    PortExhaustedError,
)


@pytest.fixture
def resolver():
    """Resolver returning a fixed app directory for any ID."""
    resolver = MagicMock()
    resolver.resolve = AsyncMock(
        side_effect=lambda app_id: AppInfo(app_id=app_id, path=f"/srv/apps/{app_id}")
    )
    return resolver


@pytest.fixture
def lifecycle(settings, mock_service, clock):
    return ContainerLifecycleManager(settings, mock_service, clock=clock, audit=MagicMock())


@pytest.fixture
def operations(mock_service, lifecycle, resolver):
    return AppOperations(mock_service, lifecycle, resolver, audit=MagicMock(), sleep=AsyncMock())


@pytest.mark.asyncio
async def test_run_allocates_port_and_starts(operations, mock_service, lifecycle):
    """Test that a run allocates a port and hands it to the engine."""
    result = await operations.run("1", start_command="vite --port 32100")

    assert result.success is True
    kwargs = mock_service.run_container.call_args.kwargs
    assert mock_service.run_container.call_args.args == ("1", "/srv/apps/1")
    assert kwargs["port"] == 32100
    assert kwargs["skip_install"] is False
    assert kwargs["start_command"] == "vite --port 32100"
    assert lifecycle.get_port("1") == 32100
    assert lifecycle.is_starting("1") is False
    assert lifecycle.get_active_apps() == ["1"]


@pytest.mark.asyncio
async def test_run_uses_resolved_commands(operations, mock_service, resolver):
    resolver.resolve.side_effect = None
    resolver.resolve.return_value = AppInfo(
        app_id="1", path="/srv/apps/1", install_command="bun install", start_command="bun dev"
    )

    await operations.run("1")

    kwargs = mock_service.run_container.call_args.kwargs
    assert kwargs["install_command"] == "bun install"
    assert kwargs["start_command"] == "bun dev"


@pytest.mark.asyncio
async def test_run_already_running(operations, mock_service, lifecycle):
    """Test that running an app that already runs does not start another container."""
    lifecycle.allocate_port("1")
    mock_service.is_container_running.return_value = True
    mock_service.get_container_status.side_effect = None
    mock_service.get_container_status.return_value = ContainerStatus(
        app_id="1", is_running=True, container_name="apphost-app-1", status="running"
    )

    result = await operations.run("1")

    assert result.success is True
    assert result.data == {"container_name": "apphost-app-1", "port": 32100, "app_id": "1"}
    mock_service.run_container.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_failure_releases_port(operations, mock_service, lifecycle):
    """Test that a failed start releases the port and raises with the engine details."""
    mock_service.run_container.return_value = OperationResult.fail(
        "Container apphost-app-1 exited during startup", error="[ERROR] No package.json found"
    )

    with pytest.raises(ContainerStartError) as exc_info:
        await operations.run("1")

    assert exc_info.value.details == "[ERROR] No package.json found"
    assert lifecycle.get_port("1") is None
    assert lifecycle.is_starting("1") is False


@pytest.mark.asyncio
async def test_run_while_starting(operations, lifecycle, mock_service):
    lifecycle.mark_as_starting("1")

    with pytest.raises(AlreadyStartingError):
        await operations.run("1")

    mock_service.run_container.assert_not_awaited()
    assert lifecycle.get_port("1") is None


@pytest.mark.asyncio
async def test_run_port_exhausted(settings_factory, mock_service, resolver, clock):
    lifecycle = ContainerLifecycleManager(
        settings_factory(port_range_start=32100, port_range_end=32100),
        mock_service,
        clock=clock,
        audit=MagicMock(),
    )
    operations = AppOperations(mock_service, lifecycle, resolver, audit=MagicMock())
    lifecycle.allocate_port("other")

    with pytest.raises(PortExhaustedError):
        await operations.run("1")
    assert lifecycle.is_starting("1") is False


@pytest.mark.asyncio
async def test_run_unknown_app(operations, resolver, lifecycle):
    resolver.resolve.side_effect = AppNotFoundError("9")

    with pytest.raises(AppNotFoundError):
        await operations.run("9")
    assert lifecycle.get_port("9") is None


@pytest.mark.asyncio
async def test_disabled(mock_service, lifecycle, resolver):
    mock_service.is_enabled.return_value = False
    operations = AppOperations(mock_service, lifecycle, resolver, audit=MagicMock())

    with pytest.raises(ContainerizationDisabledError):
        await operations.run("1")
    with pytest.raises(ContainerizationDisabledError):
        await operations.status("1")


@pytest.mark.asyncio
async def test_quick_start(operations, mock_service):
    await operations.quick_start("1")

    mock_service.quick_start_container.assert_awaited_once_with(
        "1", "/srv/apps/1", port=32100, skip_install=True
    )


@pytest.mark.asyncio
async def test_stop_releases_port(operations, mock_service, lifecycle):
    lifecycle.allocate_port("1")

    result = await operations.stop("1")

    assert result.success is True
    assert lifecycle.get_port("1") is None
    mock_service.stop_container.assert_awaited_once_with("1")


@pytest.mark.asyncio
async def test_restart_keeps_port(operations, mock_service, lifecycle):
    """Test that a restart stops and re-runs on the app's current port."""
    lifecycle.allocate_port("0")
    lifecycle.allocate_port("1")
    mock_service.is_container_running.return_value = True

    result = await operations.restart("1")

    assert result.success is True
    mock_service.stop_container.assert_awaited_once_with("1")
    operations._sleep.assert_awaited_once_with(1.0)
    assert mock_service.run_container.call_args.kwargs["port"] == 32101
    assert lifecycle.get_port("1") == 32101
    operations.audit.log_event.assert_called_once()
    assert operations.audit.log_event.call_args.args[0] == AuditEventType.CONTAINER_RESTART


@pytest.mark.asyncio
async def test_restart_adopts_published_port(operations, mock_service, lifecycle):
    """Test that restart reuses the runtime's port when none is allocated."""
    mock_service.is_container_running.return_value = True
    mock_service.get_container_status.side_effect = None
    mock_service.get_container_status.return_value = ContainerStatus(
        app_id="1", is_running=True, port=32150, status="running"
    )

    await operations.restart("1")

    assert mock_service.run_container.call_args.kwargs["port"] == 32150
    assert lifecycle.get_port("1") == 32150


@pytest.mark.asyncio
async def test_restart_requires_running_container(operations, mock_service):
    with pytest.raises(ContainerNotRunningError):
        await operations.restart("1")
    mock_service.stop_container.assert_not_awaited()


@pytest.mark.asyncio
async def test_sync_records_activity(operations, mock_service, lifecycle):
    await operations.sync("1", ["src/App.tsx"])

    mock_service.sync_files_to_container.assert_awaited_once_with("1", ["src/App.tsx"])
    assert lifecycle.get_active_apps() == ["1"]


@pytest.mark.asyncio
async def test_cleanup_releases_port(operations, mock_service, lifecycle):
    lifecycle.allocate_port("1")

    result = await operations.cleanup("1")

    assert result.success is True
    mock_service.remove_volumes.assert_awaited_once_with("1")
    assert lifecycle.get_port("1") is None


@pytest.mark.asyncio
async def test_status_overlays_lifecycle(operations, lifecycle):
    """Test that status reports mid-start apps as starting with their allocated port."""
    lifecycle.allocate_port("1")
    lifecycle.mark_as_starting("1")

    status = await operations.status("1")

    assert status.status == "starting"
    assert status.state == ContainerState.STARTING
    assert status.port == 32100
    assert "1" in lifecycle.get_active_apps()


@pytest.mark.asyncio
async def test_logs_parsed(operations, mock_service):
    mock_service.get_logs.return_value = (
        "2026-01-05T10:22:01.000000000Z [INFO] Installing\n\n"
        "2026-01-05T10:22:09.000000000Z npm ERR! code ERESOLVE\n"
    )

    records = await operations.logs("1", tail=200, timestamps=True)

    assert [record.level for record in records] == ["info", "error"]
    assert records[0].message == "[INFO] Installing"
    mock_service.get_logs.assert_awaited_once_with("1", tail=200, since=None, timestamps=True)


@pytest.mark.asyncio
async def test_stream_logs(operations, mock_service):
    async def lines(app_id, **kwargs):
        assert kwargs["timestamps"] is True
        yield "2026-01-05T10:22:01Z ready in 300 ms"

    mock_service.stream_logs = lines

    records = [record async for record in operations.stream_logs("1")]

    assert len(records) == 1
    assert records[0].message == "ready in 300 ms"


@pytest.mark.asyncio
async def test_events_and_stats(operations, mock_service, lifecycle):
    mock_service.get_events.return_value = [{"status": "start"}]

    assert await operations.events("1") == [{"status": "start"}]
    assert operations.lifecycle_stats() == lifecycle.get_stats()


@pytest.mark.asyncio
async def test_lifecycle_info(operations, mock_service, lifecycle, clock):
    await operations.run("1")
    clock.advance(45)

    info = await operations.lifecycle_info("1")

    assert info.port == 32100
    assert info.idle_seconds == 45
    assert info.is_starting is False


def slow_start(result):
    """Engine start that yields to the event loop before finishing."""

    async def run_container(*args, **kwargs):
        await asyncio.sleep(0.01)
        return result

    return run_container


@pytest.mark.asyncio
async def test_concurrent_runs_start_once(operations, mock_service, lifecycle):
    """Test that of two simultaneous runs for one app, only one reaches the engine."""
    mock_service.run_container.side_effect = slow_start(
        OperationResult.ok("started", data={"container_name": "apphost-app-7"})
    )

    results = await asyncio.gather(
        operations.run("7"), operations.run("7"), return_exceptions=True
    )

    assert sum(isinstance(r, AlreadyStartingError) for r in results) == 1
    assert sum(isinstance(r, OperationResult) and r.success for r in results) == 1
    mock_service.run_container.assert_awaited_once()
    assert lifecycle.is_starting("7") is False
    assert lifecycle.get_port("7") == 32100


@pytest.mark.asyncio
async def test_concurrent_runs_failed_start_clears_lock(operations, mock_service, lifecycle):
    """Test that a failed start still clears the lock so a later run can proceed."""
    mock_service.run_container.side_effect = slow_start(
        OperationResult.fail("exited during startup", error="boom")
    )

    results = await asyncio.gather(
        operations.run("7"), operations.run("7"), return_exceptions=True
    )

    assert sorted(type(r).__name__ for r in results) == [
        "AlreadyStartingError",
        "ContainerStartError",
    ]
    assert lifecycle.is_starting("7") is False
    assert lifecycle.get_port("7") is None

    mock_service.run_container.side_effect = None
    mock_service.run_container.return_value = OperationResult.ok("started")
    result = await operations.run("7")
    assert result.success is True
