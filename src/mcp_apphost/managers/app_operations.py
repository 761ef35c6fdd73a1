"""Application-level container operations exposed to clients."""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from mcp_apphost.engines.base import ContainerState, ContainerStatus, OperationResult
from mcp_apphost.managers.app_resolver import AppResolver
from mcp_apphost.managers.containerization_service import ContainerizationService
from mcp_apphost.managers.lifecycle_manager import (
    ContainerInfo,
    ContainerLifecycleManager,
    LifecycleStats,
)
from mcp_apphost.utils import get_logger
from mcp_apphost.utils.audit_logger import AuditEventType, AuditLogger
from mcp_apphost.utils.exceptions import (
    ContainerizationDisabledError,
    ContainerNotRunningError,
    ContainerStartError,
)
from mcp_apphost.utils.log_records import LogRecord, parse_log_line

logger = get_logger(__name__)

RESTART_PAUSE_S = 1.0


class AppOperations:
    """Run, stop and inspect application containers by app ID.

    Ties the containerization service to the lifecycle manager so every start
    goes through port allocation and the starting lock, and every stop or
    cleanup releases the app's port.
    """

    def __init__(
        self,
        service: ContainerizationService,
        lifecycle: ContainerLifecycleManager,
        resolver: AppResolver,
        audit: AuditLogger | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.service = service
        self.lifecycle = lifecycle
        self.resolver = resolver
        self.audit = audit or AuditLogger()
        self._sleep = sleep

    def _require_enabled(self) -> None:
        if not self.service.is_enabled():
            raise ContainerizationDisabledError()

    async def run(
        self,
        app_id: str,
        install_command: Optional[str] = None,
        start_command: Optional[str] = None,
    ) -> OperationResult:
        """
        Start an app's container unless it is already running.

        Args:
            app_id: Application ID
            install_command: Custom dependency install command
            start_command: Custom dev server command

        Returns:
            OperationResult with ``container_name`` and ``port``

        Raises:
            ContainerizationDisabledError: If containerization is off
            AppNotFoundError: If the app cannot be resolved
            AlreadyStartingError: If a start for the app is in flight
            PortExhaustedError: If no host port is free
            ContainerStartError: If the engine failed to start the container
        """
        return await self._start(
            app_id,
            skip_install=False,
            install_command=install_command,
            start_command=start_command,
        )

    async def quick_start(self, app_id: str, skip_install: bool = True) -> OperationResult:
        """Start an app's container, by default reusing already installed dependencies."""
        return await self._start(app_id, skip_install=skip_install, quick=True)

    async def _start(
        self,
        app_id: str,
        skip_install: bool,
        install_command: Optional[str] = None,
        start_command: Optional[str] = None,
        quick: bool = False,
    ) -> OperationResult:
        self._require_enabled()

        if await self.service.is_container_running(app_id):
            self.lifecycle.record_activity(app_id)
            status = await self.service.get_container_status(app_id)
            port = status.port or self.lifecycle.get_port(app_id)
            return OperationResult.ok(
                "Container already running",
                data={"container_name": status.container_name, "port": port, "app_id": app_id},
            )

        app = await self.resolver.resolve(app_id)

        with self.lifecycle.starting(app_id):
            port = self.lifecycle.allocate_port(app_id)
            if quick:
                result = await self.service.quick_start_container(
                    app_id, app.path, port=port, skip_install=skip_install
                )
            else:
                result = await self.service.run_container(
                    app_id,
                    app.path,
                    port=port,
                    skip_install=skip_install,
                    install_command=install_command or app.install_command,
                    start_command=start_command or app.start_command,
                )
            if not result.success:
                self.lifecycle.release_port(app_id)
                raise ContainerStartError(app_id, result.message, result.error)

        self.lifecycle.mark_as_started(app_id)
        logger.info("App container started", extra={"app_id": app_id, "port": port})
        return result

    async def stop(self, app_id: str) -> OperationResult:
        self._require_enabled()
        return await self.lifecycle.stop_container(app_id)

    async def restart(self, app_id: str) -> OperationResult:
        """
        Restart a running app's container on the same port.

        Raises:
            ContainerNotRunningError: If the container is not running
            AlreadyStartingError: If a start for the app is in flight
            ContainerStartError: If the container fails to come back
        """
        self._require_enabled()

        if not await self.service.is_container_running(app_id):
            raise ContainerNotRunningError(app_id)

        app = await self.resolver.resolve(app_id)

        with self.lifecycle.starting(app_id):
            status = await self.service.get_container_status(app_id)
            port = self.lifecycle.get_port(app_id)
            if port is None:
                if status.port and self.lifecycle.adopt_port(app_id, status.port):
                    port = status.port
                else:
                    port = self.lifecycle.allocate_port(app_id)

            await self.service.stop_container(app_id)
            await self._sleep(RESTART_PAUSE_S)

            result = await self.service.run_container(
                app_id,
                app.path,
                port=port,
                install_command=app.install_command,
                start_command=app.start_command,
            )
            if not result.success:
                self.lifecycle.release_port(app_id)
                raise ContainerStartError(app_id, result.message, result.error)

        self.lifecycle.mark_as_started(app_id)
        self.audit.log_event(
            AuditEventType.CONTAINER_RESTART,
            app_id=app_id,
            engine=self.service.engine_type,
            details={"port": port},
        )
        return result

    async def sync(self, app_id: str, file_paths: Optional[List[str]] = None) -> OperationResult:
        self._require_enabled()
        self.lifecycle.record_activity(app_id)
        return await self.service.sync_files_to_container(app_id, file_paths)

    async def cleanup(self, app_id: str) -> OperationResult:
        """Remove an app's container and dependency cache, and release its port."""
        self._require_enabled()
        result = await self.service.remove_volumes(app_id)
        self.lifecycle.release_port(app_id)
        return result

    async def status(self, app_id: str) -> ContainerStatus:
        self._require_enabled()
        self.lifecycle.record_activity(app_id)
        status = await self.service.get_container_status(app_id)
        if self.lifecycle.is_starting(app_id) and not status.is_running:
            status = status.model_copy(update={"status": "starting", "state": ContainerState.STARTING})
        if status.port is None:
            status = status.model_copy(update={"port": self.lifecycle.get_port(app_id)})
        return status

    def lifecycle_stats(self) -> LifecycleStats:
        return self.lifecycle.get_stats()

    async def lifecycle_info(self, app_id: str) -> ContainerInfo:
        self._require_enabled()
        return await self.lifecycle.get_container_info(app_id)

    async def logs(
        self,
        app_id: str,
        tail: Optional[int] = None,
        since: Optional[str] = None,
        timestamps: bool = False,
    ) -> List[LogRecord]:
        self._require_enabled()
        raw = await self.service.get_logs(app_id, tail=tail, since=since, timestamps=timestamps)
        return [parse_log_line(line) for line in raw.splitlines() if line.strip()]

    async def events(self, app_id: str) -> List[Dict[str, Any]]:
        self._require_enabled()
        return await self.service.get_events(app_id)

    async def stream_logs(
        self,
        app_id: str,
        follow: bool = True,
        tail: Optional[int] = None,
        since: Optional[str] = None,
    ) -> AsyncIterator[LogRecord]:
        self._require_enabled()
        stream = self.service.stream_logs(
            app_id, follow=follow, tail=tail, since=since, timestamps=True
        )
        try:
            async for line in stream:
                yield parse_log_line(line)
        finally:
            await stream.aclose()
