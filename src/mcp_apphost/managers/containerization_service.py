"""Containerization service: the single entry point to the configured engine."""

from typing import Any, AsyncIterator, Dict, List, Optional

from mcp_apphost.engines.base import (
    ContainerStatus,
    DiscoveredContainer,
    OperationResult,
    RunContainerOptions,
    SyncFilesOptions,
    VolumeMount,
)
from mcp_apphost.engines.factory import ContainerFactory
from mcp_apphost.utils import get_logger
from mcp_apphost.utils.audit_logger import AuditEventType, AuditLogger
from mcp_apphost.utils.exceptions import EngineUnavailableError
from mcp_apphost.utils.metrics_collector import MetricsCollector

logger = get_logger(__name__)

DISABLED_MESSAGE = "Containerization is disabled"


class ContainerizationService:
    """Facade over the container factory.

    While containerization is disabled, mutating operations return failed
    results and queries return absent/empty values; nothing here raises for a
    query.
    """

    def __init__(
        self,
        factory: ContainerFactory,
        metrics: MetricsCollector | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        """
        Initialize containerization service.

        Args:
            factory: Container factory selecting the engine handler
            metrics: Metrics collector for start outcomes
            audit: Audit logger for lifecycle events
        """
        self.factory = factory
        self.metrics = metrics
        self.audit = audit or AuditLogger()

    @property
    def engine_type(self) -> str:
        return self.factory.engine_type

    def is_enabled(self) -> bool:
        return self.factory.is_enabled()

    def _handler(self):
        return self.factory.get_current_handler()

    def _disabled(self) -> OperationResult:
        return OperationResult.fail(DISABLED_MESSAGE, error=DISABLED_MESSAGE)

    async def initialize(self) -> None:
        """
        Initialize the configured engine.

        Raises:
            EngineUnavailableError: If the engine's runtime cannot be reached
            ConfigurationError: If the configured engine is unknown or a placeholder
        """
        if not self.is_enabled():
            logger.info("Containerization disabled")
            return

        handler = self._handler()
        await handler.initialize()
        if not await handler.is_available():
            raise EngineUnavailableError(self.engine_type)

        version = await handler.get_version()
        logger.info(
            "Containerization service initialized",
            extra={"engine": self.engine_type, "version": version, "image": handler.image},
        )

    async def is_available(self) -> bool:
        return await self.factory.is_current_engine_available()

    async def get_engine_info(self) -> Dict[str, Any]:
        if not self.is_enabled():
            return {"enabled": False}
        info = await self._handler().get_engine_info()
        return {"enabled": True, "engine": self.engine_type, **info}

    def get_container_name(self, app_id: str) -> str:
        return self._handler().get_container_name(app_id)

    @property
    def default_port(self) -> int:
        return self.factory.settings.engine_default_port()

    # Mutating operations

    async def run_container(
        self,
        app_id: str,
        app_path: str,
        port: Optional[int] = None,
        skip_install: bool = False,
        cpu_limit: Optional[str] = None,
        memory_limit: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
        volume_mounts: Optional[List[VolumeMount]] = None,
        install_command: Optional[str] = None,
        start_command: Optional[str] = None,
    ) -> OperationResult:
        """
        Run an application container on the configured engine.

        Args:
            app_id: Application ID
            app_path: Application directory
            port: Host port; the engine default when omitted
            skip_install: Skip dependency installation
            cpu_limit: CPU limit override
            memory_limit: Memory limit override
            environment: Extra environment variables
            volume_mounts: Extra bind mounts
            install_command: Custom install command
            start_command: Custom dev server command

        Returns:
            OperationResult from the engine
        """
        if not self.is_enabled():
            return self._disabled()

        options = RunContainerOptions(
            app_id=app_id,
            app_path=app_path,
            port=port,
            skip_install=skip_install,
            cpu_limit=cpu_limit,
            memory_limit=memory_limit,
            environment=environment or {},
            volume_mounts=volume_mounts or [],
            install_command=install_command,
            start_command=start_command,
        )
        result = await self._handler().run_container(options)

        if self.metrics:
            self.metrics.record_container_start(self.engine_type, result.success)
        reclaimed = (result.data or {}).get("reclaimed")
        if reclaimed:
            self.audit.log_event(
                AuditEventType.CONTAINER_RECLAIM,
                app_id=app_id,
                engine=self.engine_type,
                details={"port": port, "containers": reclaimed},
            )
        self.audit.log_event(
            AuditEventType.CONTAINER_START if result.success else AuditEventType.CONTAINER_START_FAILED,
            app_id=app_id,
            engine=self.engine_type,
            details={"port": port, "message": result.message},
        )
        return result

    async def quick_start_container(
        self,
        app_id: str,
        app_path: str,
        port: Optional[int] = None,
        skip_install: bool = True,
    ) -> OperationResult:
        """Start a container reusing installed dependencies by default."""
        return await self.run_container(app_id, app_path, port=port, skip_install=skip_install)

    async def stop_container(self, app_id: str) -> OperationResult:
        if not self.is_enabled():
            return self._disabled()
        result = await self._handler().stop_container(app_id)
        if result.success:
            self.audit.log_event(
                AuditEventType.CONTAINER_STOP, app_id=app_id, engine=self.engine_type
            )
        return result

    async def remove_container(self, app_id: str, force: bool = False) -> OperationResult:
        if not self.is_enabled():
            return self._disabled()
        result = await self._handler().remove_container(app_id, force=force)
        if result.success:
            self.audit.log_event(
                AuditEventType.CONTAINER_REMOVE,
                app_id=app_id,
                engine=self.engine_type,
                details={"force": force},
            )
        return result

    async def remove_volumes(self, app_id: str) -> OperationResult:
        if not self.is_enabled():
            return self._disabled()
        result = await self._handler().cleanup_volumes(app_id)
        self.audit.log_event(
            AuditEventType.CONTAINER_CLEANUP,
            app_id=app_id,
            engine=self.engine_type,
            details={"success": result.success},
        )
        return result

    async def sync_files_to_container(
        self, app_id: str, file_paths: Optional[List[str]] = None
    ) -> OperationResult:
        if not self.is_enabled():
            return self._disabled()
        return await self._handler().sync_files_to_container(
            SyncFilesOptions(app_id=app_id, file_paths=file_paths)
        )

    async def exec_in_container(self, app_id: str, command: List[str]) -> OperationResult:
        if not self.is_enabled():
            return self._disabled()
        return await self._handler().exec_in_container(app_id, command)

    # Queries

    async def get_container_status(self, app_id: str) -> ContainerStatus:
        if not self.is_enabled():
            return ContainerStatus.absent(app_id)
        return await self._handler().get_container_status(app_id)

    async def container_exists(self, app_id: str) -> bool:
        if not self.is_enabled():
            return False
        return await self._handler().container_exists(app_id)

    async def is_container_running(self, app_id: str) -> bool:
        if not self.is_enabled():
            return False
        return await self._handler().is_container_running(app_id)

    async def is_container_ready(self, app_id: str) -> bool:
        if not self.is_enabled():
            return False
        return await self._handler().is_container_ready(app_id)

    async def has_dependencies_installed(self, app_id: str) -> bool:
        if not self.is_enabled():
            return False
        return await self._handler().has_dependencies_installed(app_id)

    async def get_container_logs(self, app_id: str, lines: int = 100) -> str:
        if not self.is_enabled():
            return ""
        return await self._handler().get_container_logs(app_id, lines)

    async def get_logs(
        self,
        app_id: str,
        tail: Optional[int] = None,
        since: Optional[str] = None,
        timestamps: bool = False,
    ) -> str:
        if not self.is_enabled():
            return ""
        return await self._handler().get_logs(app_id, tail=tail, since=since, timestamps=timestamps)

    async def stream_logs(
        self,
        app_id: str,
        follow: bool = True,
        tail: Optional[int] = None,
        since: Optional[str] = None,
        timestamps: bool = False,
    ) -> AsyncIterator[str]:
        if not self.is_enabled():
            return
        stream = self._handler().stream_logs(
            app_id, follow=follow, tail=tail, since=since, timestamps=timestamps
        )
        try:
            async for line in stream:
                yield line
        finally:
            await stream.aclose()

    async def get_events(self, app_id: str) -> List[Dict[str, Any]]:
        if not self.is_enabled():
            return []
        return await self._handler().get_events(app_id)

    async def list_containers(self) -> List[DiscoveredContainer]:
        if not self.is_enabled():
            return []
        return await self._handler().list_containers()
