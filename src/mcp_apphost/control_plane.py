"""Composition root wiring the control plane's components together."""

import httpx

from mcp_apphost.config import Settings
from mcp_apphost.engines.factory import ContainerFactory
from mcp_apphost.managers.app_operations import AppOperations
from mcp_apphost.managers.app_resolver import AppResolver, DirectoryAppResolver
from mcp_apphost.managers.containerization_service import ContainerizationService
from mcp_apphost.managers.lifecycle_manager import ContainerLifecycleManager
from mcp_apphost.preview.proxy import PreviewProxy
from mcp_apphost.utils import get_logger
from mcp_apphost.utils.audit_logger import AuditEventType, AuditLogger
from mcp_apphost.utils.metrics_collector import MetricsCollector

logger = get_logger(__name__)

UPSTREAM_CONNECT_TIMEOUT_S = 10.0


class ControlPlane:
    """Owns one instance of every component and their start/stop order."""

    def __init__(
        self,
        settings: Settings,
        factory: ContainerFactory | None = None,
        resolver: AppResolver | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: MetricsCollector | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        """
        Build the component graph.

        Args:
            settings: Application settings
            factory: Container factory; built from settings when omitted
            resolver: App metadata resolver; directory based when omitted
            http_client: Client for preview upstream requests
            metrics: Metrics collector
            audit: Audit logger
        """
        self.settings = settings
        self.metrics = metrics or MetricsCollector()
        self.audit = audit or AuditLogger()

        self.factory = factory or ContainerFactory(settings)
        self.service = ContainerizationService(self.factory, metrics=self.metrics, audit=self.audit)
        self.lifecycle = ContainerLifecycleManager(
            settings, self.service, metrics=self.metrics, audit=self.audit
        )
        self.resolver = resolver or DirectoryAppResolver(settings.apps_base_dir)
        self.operations = AppOperations(
            self.service, self.lifecycle, self.resolver, audit=self.audit
        )

        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.preview_timeout_s, connect=UPSTREAM_CONNECT_TIMEOUT_S),
            follow_redirects=False,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )
        self.proxy = PreviewProxy(
            settings,
            self.service,
            self.lifecycle,
            self.resolver,
            self.http_client,
            metrics=self.metrics,
        )
        self._started = False

    async def start(self) -> None:
        """
        Initialize the engine, rebuild lifecycle state and start the reaper.

        Raises:
            EngineUnavailableError: If the configured engine cannot be reached
            ConfigurationError: If the configured engine is unusable
        """
        if self._started:
            return

        self.audit.log_event(
            AuditEventType.SYSTEM_STARTUP,
            engine=self.settings.engine,
            details={"enabled": self.settings.enabled},
        )

        if self.settings.enabled:
            try:
                await self.service.initialize()
            except Exception as e:
                logger.error(
                    "Failed to initialize containerization",
                    extra={"engine": self.settings.engine, "error": str(e)},
                )
                raise
            await self.lifecycle.initialize()
            await self.lifecycle.start()

        self._started = True
        logger.info(
            "Control plane started",
            extra={"enabled": self.settings.enabled, "engine": self.settings.engine},
        )

    async def stop(self) -> None:
        """Stop the reaper and release client connections; containers keep running."""
        await self.lifecycle.stop()
        await self.http_client.aclose()
        self.factory.close()

        if self._started:
            self.audit.log_event(AuditEventType.SYSTEM_SHUTDOWN, engine=self.settings.engine)
        self._started = False
        logger.info("Control plane stopped")
