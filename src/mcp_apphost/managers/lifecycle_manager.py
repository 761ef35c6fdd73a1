"""Container lifecycle manager: host ports, start serialization and idle reaping."""

import asyncio
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Set

from pydantic import BaseModel, Field

from mcp_apphost.config import Settings
from mcp_apphost.managers.containerization_service import ContainerizationService
from mcp_apphost.utils import get_logger
from mcp_apphost.utils.audit_logger import AuditEventType, AuditLogger
from mcp_apphost.utils.exceptions import AlreadyStartingError, PortExhaustedError
from mcp_apphost.utils.metrics_collector import MetricsCollector

logger = get_logger(__name__)

# Interval after which a failed sweep loop iteration is retried
REAP_ERROR_RETRY_SECONDS = 60
# Extra age given to stopped containers found at discovery
DISCOVERY_STALE_MARGIN_S = 60


class LifecycleStats(BaseModel):
    """Snapshot of lifecycle state."""

    managed_containers: int
    allocated_ports: int
    starting_containers: int
    active_apps: List[str] = Field(default_factory=list)
    port_range: str
    inactivity_timeout: int
    initialized: bool


class ReapStats(BaseModel):
    """Outcome of one idle sweep."""

    checked: int = 0
    reaped: int = 0
    errors: int = 0
    skipped: bool = False


class ContainerInfo(BaseModel):
    """Lifecycle view of one application container."""

    app_id: str
    is_running: bool
    port: Optional[int] = None
    idle_seconds: Optional[float] = None
    is_starting: bool = False


class ContainerLifecycleManager:
    """Owns host port allocation, the starting lock and the idle reaper.

    Allocation and the starting set are only mutated from the event loop,
    without an ``await`` between check and update, so concurrent requests for
    the same app never interleave inside them.
    """

    def __init__(
        self,
        settings: Settings,
        service: ContainerizationService,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsCollector | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        """
        Initialize lifecycle manager.

        Args:
            settings: Application settings (port range, timeouts)
            service: Containerization service used to stop containers
            clock: Monotonic clock, injectable for tests
            metrics: Metrics collector for gauges and reap counts
            audit: Audit logger for port and reap events
        """
        self.settings = settings
        self.service = service
        self.clock = clock
        self.metrics = metrics
        self.audit = audit or AuditLogger()

        self._ports: Dict[str, int] = {}
        self._starting: Set[str] = set()
        self._activity: Dict[str, float] = {}

        self._initialized = False
        self._running = False
        self._task: asyncio.Task | None = None
        self._sweeping = False

    # Port pool

    def allocate_port(self, app_id: str, force_new: bool = False) -> int:
        """
        Allocate a host port for an app.

        Args:
            app_id: Application ID
            force_new: Release any existing allocation first

        Returns:
            The app's existing port, or the lowest free port in range

        Raises:
            PortExhaustedError: If every port in the range is allocated
        """
        if force_new:
            self.release_port(app_id)
        elif app_id in self._ports:
            return self._ports[app_id]

        used = set(self._ports.values())
        for port in range(self.settings.port_range_start, self.settings.port_range_end + 1):
            if port not in used:
                self._ports[app_id] = port
                self._update_gauges()
                logger.info("Port allocated", extra={"app_id": app_id, "port": port})
                self.audit.log_event(
                    AuditEventType.PORT_ALLOCATE, app_id=app_id, details={"port": port}
                )
                return port

        raise PortExhaustedError(app_id, self.settings.port_range)

    def adopt_port(self, app_id: str, port: int) -> bool:
        """
        Record a port an app's container already publishes.

        Returns:
            False if the port is outside the range, taken by another app, or
            the app already holds a port
        """
        if not self.settings.port_range_start <= port <= self.settings.port_range_end:
            return False
        if app_id in self._ports or port in self._ports.values():
            return False
        self._ports[app_id] = port
        self._update_gauges()
        return True

    def release_port(self, app_id: str) -> None:
        port = self._ports.pop(app_id, None)
        if port is None:
            return
        self._update_gauges()
        logger.info("Port released", extra={"app_id": app_id, "port": port})
        self.audit.log_event(AuditEventType.PORT_RELEASE, app_id=app_id, details={"port": port})

    def get_port(self, app_id: str) -> Optional[int]:
        return self._ports.get(app_id)

    # Starting lock

    def is_starting(self, app_id: str) -> bool:
        return app_id in self._starting

    def mark_as_starting(self, app_id: str) -> bool:
        """Mark an app as starting; False if a start is already in flight."""
        if app_id in self._starting:
            return False
        self._starting.add(app_id)
        self._update_gauges()
        return True

    def mark_as_started(self, app_id: str) -> None:
        self._starting.discard(app_id)
        self.record_activity(app_id)
        self._update_gauges()

    def clear_starting(self, app_id: str) -> None:
        self._starting.discard(app_id)
        self._update_gauges()

    @contextmanager
    def starting(self, app_id: str) -> Iterator[None]:
        """
        Hold the starting lock for an app for the duration of the block.

        Raises:
            AlreadyStartingError: If another start for the app is in flight
        """
        if not self.mark_as_starting(app_id):
            raise AlreadyStartingError(app_id)
        try:
            yield
        finally:
            self.clear_starting(app_id)

    # Activity

    def record_activity(self, app_id: str) -> None:
        self._activity[app_id] = self.clock()

    def get_active_apps(self) -> List[str]:
        return list(self._activity)

    def idle_seconds(self, app_id: str) -> Optional[float]:
        last = self._activity.get(app_id)
        if last is None:
            return None
        return self.clock() - last

    # Explicit operations

    async def stop_container(self, app_id: str):
        """Stop an app's container and release its port."""
        result = await self.service.stop_container(app_id)
        if result.success:
            self.release_port(app_id)
            self._activity.pop(app_id, None)
        return result

    async def remove_container(self, app_id: str, force: bool = True):
        """Remove an app's container and release its port."""
        result = await self.service.remove_container(app_id, force=force)
        if result.success:
            self.release_port(app_id)
            self._activity.pop(app_id, None)
        return result

    async def get_container_info(self, app_id: str) -> ContainerInfo:
        return ContainerInfo(
            app_id=app_id,
            is_running=await self.service.is_container_running(app_id),
            port=self.get_port(app_id),
            idle_seconds=self.idle_seconds(app_id),
            is_starting=self.is_starting(app_id),
        )

    def get_stats(self) -> LifecycleStats:
        return LifecycleStats(
            managed_containers=len(self._activity),
            allocated_ports=len(self._ports),
            starting_containers=len(self._starting),
            active_apps=self.get_active_apps(),
            port_range=self.settings.port_range,
            inactivity_timeout=self.settings.inactivity_timeout_s,
            initialized=self._initialized,
        )

    # Reaper

    async def reap_idle_containers(self) -> ReapStats:
        """
        Stop containers idle for longer than the inactivity timeout.

        Apps that are mid-start are left alone. A failure for one app is
        logged and counted; the sweep continues with the rest.

        Returns:
            Sweep statistics
        """
        if self._sweeping:
            logger.debug("Idle sweep already in progress, skipping")
            return ReapStats(skipped=True)

        self._sweeping = True
        stats = ReapStats()
        try:
            now = self.clock()
            timeout = self.settings.inactivity_timeout_s
            for app_id, last_activity in list(self._activity.items()):
                stats.checked += 1
                if self.is_starting(app_id) or now - last_activity <= timeout:
                    continue
                try:
                    await self._reap(app_id, now - last_activity)
                    stats.reaped += 1
                except Exception as e:
                    stats.errors += 1
                    logger.error(
                        "Failed to reap idle container",
                        extra={"app_id": app_id, "error": str(e)},
                    )
        finally:
            self._sweeping = False

        if stats.reaped or stats.errors:
            logger.info("Idle sweep completed", extra=stats.model_dump())
        return stats

    async def _reap(self, app_id: str, idle_s: float) -> None:
        if await self.service.is_container_running(app_id):
            result = await self.service.stop_container(app_id)
            if not result.success:
                raise RuntimeError(result.error or result.message)

        # Activity may have been recorded while the stop was in flight
        last = self._activity.get(app_id)
        if last is not None and self.clock() - last <= self.settings.inactivity_timeout_s:
            return

        self.release_port(app_id)
        self._activity.pop(app_id, None)
        if self.metrics:
            self.metrics.record_reap()
        self.audit.log_event(
            AuditEventType.CONTAINER_REAP,
            app_id=app_id,
            engine=self.service.engine_type,
            details={"idle_seconds": round(idle_s, 1)},
        )
        logger.info("Idle container reaped", extra={"app_id": app_id, "idle_seconds": idle_s})

    async def start(self) -> None:
        """Start the background idle reaper."""
        if self._running:
            logger.warning("Lifecycle manager already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_reaper_loop())
        logger.info(
            "Lifecycle manager started",
            extra={
                "reap_interval_s": self.settings.reap_interval_s,
                "inactivity_timeout_s": self.settings.inactivity_timeout_s,
            },
        )

    async def stop(self) -> None:
        """Stop the background idle reaper."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                # Task cancellation is expected during shutdown
                pass
            self._task = None
        logger.info("Lifecycle manager stopped")

    async def _run_reaper_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.settings.reap_interval_s)
                await self.reap_idle_containers()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Idle sweep failed", extra={"error": str(e)})
                await asyncio.sleep(REAP_ERROR_RETRY_SECONDS)

    # Discovery

    async def initialize(self) -> None:
        """
        Rebuild lifecycle state from containers already on the runtime.

        Running containers count as just active. Stopped ones are backdated
        past the inactivity timeout so the next sweep reclaims their ports.
        Discovery failures are logged and leave the state empty.
        """
        if self._initialized:
            return

        try:
            containers = await self.service.list_containers()
        except Exception as e:
            logger.error("Container discovery failed", extra={"error": str(e)})
            containers = []

        now = self.clock()
        stale = now - self.settings.inactivity_timeout_s - DISCOVERY_STALE_MARGIN_S
        adopted = 0

        for container in containers:
            port = container.port
            if port is not None and not self.adopt_port(container.app_id, port):
                logger.warning(
                    "Discovered container port not adopted",
                    extra={"app_id": container.app_id, "port": port},
                )
            self._activity[container.app_id] = now if container.is_running else stale
            adopted += 1

        self._initialized = True
        self._update_gauges()
        self.audit.log_event(
            AuditEventType.SYSTEM_DISCOVERY,
            engine=self.service.engine_type,
            details={"containers": adopted, "ports": len(self._ports)},
        )
        logger.info(
            "Lifecycle manager initialized",
            extra={"discovered": adopted, "allocated_ports": len(self._ports)},
        )

    def _update_gauges(self) -> None:
        if self.metrics:
            self.metrics.set_allocated_ports(len(self._ports))
            self.metrics.set_starting_containers(len(self._starting))
