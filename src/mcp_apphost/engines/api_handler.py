"""Engine handler for Docker-API compatible runtimes.

Docker and Podman (through its Docker-compatible socket) share every
operation here; subclasses only choose the endpoint, image and labelling
options, and may hook work in before each runtime command.
"""

import asyncio
import codecs
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from docker import DockerClient
from docker.errors import DockerException, NotFound
from docker.models.containers import Container as DockerContainer

from mcp_apphost.config import Settings
from mcp_apphost.engines.base import (
    APP_ID_LABEL,
    CONTAINER_PREFIX,
    ContainerState,
    ContainerStatus,
    DiscoveredContainer,
    OperationResult,
    RunContainerOptions,
    SyncFilesOptions,
    app_id_from_container_name,
    container_name_for,
    volume_name_for,
)
from mcp_apphost.engines.helpers import (
    APP_MOUNT_PATH,
    build_environment,
    build_volumes,
    parse_cpu_limit,
    parse_host_port,
    parse_json_lines,
    published_ports,
    rewrite_host_path,
)
from mcp_apphost.engines.readiness import LogMarkerReadiness, ReadinessMatcher
from mcp_apphost.engines.scripts import build_startup_script
from mcp_apphost.utils import get_logger
from mcp_apphost.utils.docker_client import DockerClientManager
from mcp_apphost.utils.exceptions import EngineUnavailableError

logger = get_logger(__name__)

RECLAIM_SETTLE_S = 1.0
STOP_TIMEOUT_S = 10
FAILURE_LOG_LINES = 50
EVENTS_WINDOW = timedelta(hours=24)
DEPENDENCY_PROBE = f"[ -d {APP_MOUNT_PATH}/node_modules ] && echo exists || echo missing"


class DockerApiHandler:
    """Container operations over the Docker Engine API."""

    engine_type = "docker"
    selinux_label = False

    def __init__(
        self,
        settings: Settings,
        client: DockerClient | None = None,
        readiness: ReadinessMatcher | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the handler.

        Args:
            settings: Application settings
            client: Pre-built SDK client; connected lazily from settings when omitted
            readiness: Matcher deciding readiness from logs
            sleep: Coroutine used for settle delays
        """
        self.settings = settings
        self.image = settings.engine_image(self.engine_type)
        self.default_port = settings.engine_default_port(self.engine_type)
        self.readiness = readiness or LogMarkerReadiness()
        self._client = client
        self._client_manager = DockerClientManager(self._base_url(), engine=self.engine_type)
        self._sleep = sleep
        self._initialized = False

    def _base_url(self) -> str | None:
        return self.settings.docker_host

    @property
    def client(self) -> DockerClient:
        if self._client is None:
            self._client = self._client_manager.get_client()
        return self._client

    async def _before_command(self) -> None:
        """Hook run before each runtime command."""
        return None

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        await self._before_command()
        return await asyncio.to_thread(func, *args, **kwargs)

    def _find_container(self, app_id: str) -> DockerContainer | None:
        try:
            return self.client.containers.get(self.get_container_name(app_id))
        except NotFound:
            return None

    # Engine information

    async def initialize(self) -> None:
        """
        Verify the runtime is reachable.

        Raises:
            EngineUnavailableError: If the daemon cannot be reached
        """
        if self._initialized:
            return

        try:
            await self._call(lambda: self.client.ping())
        except EngineUnavailableError:
            raise
        except Exception as e:
            raise EngineUnavailableError(self.engine_type, str(e)) from e

        self._initialized = True
        logger.info(
            "Container engine initialized",
            extra={"engine": self.engine_type, "image": self.image},
        )

    async def is_available(self) -> bool:
        try:
            await self._call(lambda: self.client.ping())
            return True
        except Exception as e:
            logger.debug(
                "Container engine not available",
                extra={"engine": self.engine_type, "error": str(e)},
            )
            return False

    async def get_version(self) -> str:
        try:
            version = await self._call(lambda: self.client.version())
            return str(version.get("Version", ""))
        except Exception as e:
            logger.debug("Failed to get engine version", extra={"error": str(e)})
            return ""

    async def get_engine_info(self) -> Dict[str, Any]:
        try:
            return await self._call(lambda: self.client.info())
        except Exception as e:
            return {"error": str(e)}

    def get_container_name(self, app_id: str) -> str:
        return container_name_for(app_id)

    def get_volume_name(self, app_id: str) -> str:
        return volume_name_for(app_id)

    # Lifecycle

    async def run_container(self, options: RunContainerOptions) -> OperationResult:
        """
        Start an application container in the background.

        Stale containers holding the app's name or host port are reclaimed
        first when ``auto_reclaim_port`` is enabled. The container is checked
        once after the settle interval; readiness is not awaited.

        Args:
            options: Run options

        Returns:
            OperationResult with ``container_name``, ``port``, ``app_id`` and the
            names of ``reclaimed`` containers on success
        """
        app_id = options.app_id
        port = options.port or self.default_port
        container_name = self.get_container_name(app_id)
        reclaimed: List[str] = []

        try:
            if self.settings.auto_reclaim_port:
                reclaimed = await self._call(self._reclaim, app_id, port)
                if reclaimed:
                    logger.info(
                        "Reclaimed stale containers",
                        extra={"app_id": app_id, "port": port, "containers": reclaimed},
                    )
                    await self._sleep(RECLAIM_SETTLE_S)
            elif await self.container_exists(app_id):
                return OperationResult.fail(
                    f"Container {container_name} already exists",
                    error=(
                        f"Container {container_name} already exists. Remove it or set "
                        "APPHOST_AUTO_RECLAIM_PORT=true to enable automatic reclaim."
                    ),
                )

            volume_name = self.get_volume_name(app_id)
            await self._call(self._ensure_volume, volume_name)

            host_path = rewrite_host_path(
                options.app_path,
                self.settings.apps_base_dir,
                self.settings.host_apps_base_dir,
            )
            script = build_startup_script(
                options.app_path,
                port,
                skip_install=options.skip_install,
                install_command=options.install_command,
                start_command=options.start_command,
                default_package_manager=self.settings.default_package_manager,
            )

            run_kwargs = {
                "image": self.image,
                "command": ["sh", "-c", script],
                "name": container_name,
                "detach": True,
                "ports": {f"{port}/tcp": port},
                "nano_cpus": parse_cpu_limit(options.cpu_limit or self.settings.cpu_limit),
                "mem_limit": options.memory_limit or self.settings.memory_limit,
                "environment": build_environment(port, options.environment),
                "volumes": build_volumes(
                    host_path,
                    volume_name,
                    options.volume_mounts,
                    selinux_label=self.selinux_label,
                ),
                "working_dir": APP_MOUNT_PATH,
                "labels": {APP_ID_LABEL: app_id},
            }
            await self._call(lambda: self.client.containers.run(**run_kwargs))

            logger.info(
                "Container launched",
                extra={
                    "engine": self.engine_type,
                    "app_id": app_id,
                    "container_name": container_name,
                    "port": port,
                    "host_path": host_path,
                },
            )

        except Exception as e:
            logger.error(
                "Failed to run container",
                extra={"engine": self.engine_type, "app_id": app_id, "error": str(e)},
            )
            return OperationResult.fail(f"Failed to run container: {e}", error=str(e))

        await self._sleep(self.settings.run_settle_interval_s)
        if not await self.is_container_running(app_id):
            logs = await self.get_container_logs(app_id, FAILURE_LOG_LINES)
            logger.error(
                "Container exited during startup",
                extra={"engine": self.engine_type, "app_id": app_id, "port": port},
            )
            return OperationResult.fail(
                f"Container {container_name} exited during startup",
                error=logs or "Container exited without output",
            )

        return OperationResult.ok(
            f"Container {container_name} started on port {port}",
            data={
                "container_name": container_name,
                "port": port,
                "app_id": app_id,
                "note": "Dependencies may still be installing; poll status for readiness",
                "reclaimed": reclaimed,
            },
        )

    def _reclaim(self, app_id: str, port: int) -> List[str]:
        """Remove the app's stale container and any container holding ``port``."""
        container_name = self.get_container_name(app_id)
        removed = []

        try:
            existing = self.client.containers.get(container_name)
            if existing.status == "running":
                existing.stop(timeout=STOP_TIMEOUT_S)
            existing.remove(force=True)
            removed.append(container_name)
        except NotFound:
            pass
        except DockerException as e:
            logger.warning(
                "Failed to remove existing container",
                extra={"container_name": container_name, "error": str(e)},
            )

        try:
            candidates = self.client.containers.list(all=True)
        except DockerException as e:
            logger.warning("Failed to scan containers for port conflicts", extra={"error": str(e)})
            return removed

        for candidate in candidates:
            if candidate.name == container_name:
                continue
            attrs = candidate.attrs or {}
            ports = published_ports(
                attrs.get("NetworkSettings", {}).get("Ports"),
                attrs.get("HostConfig", {}).get("PortBindings"),
            )
            if port not in ports:
                continue
            try:
                if candidate.status == "running":
                    candidate.stop(timeout=STOP_TIMEOUT_S)
                candidate.remove(force=True)
                removed.append(candidate.name)
                logger.info(
                    "Removed container holding requested port",
                    extra={"container_name": candidate.name, "port": port},
                )
            except DockerException as e:
                logger.warning(
                    "Failed to remove container holding requested port",
                    extra={"container_name": candidate.name, "port": port, "error": str(e)},
                )

        return removed

    def _ensure_volume(self, volume_name: str) -> None:
        try:
            self.client.volumes.get(volume_name)
        except NotFound:
            self.client.volumes.create(name=volume_name)
            logger.debug("Dependency cache volume created", extra={"volume_name": volume_name})

    async def stop_container(self, app_id: str) -> OperationResult:
        container_name = self.get_container_name(app_id)
        try:
            container = await self._call(self._find_container, app_id)
            if container is None:
                return OperationResult.ok(f"Container {container_name} not found")
            if container.status != "running":
                return OperationResult.ok(f"Container {container_name} is not running")

            await self._call(container.stop, timeout=STOP_TIMEOUT_S)
            logger.info(
                "Container stopped",
                extra={"engine": self.engine_type, "app_id": app_id},
            )
            return OperationResult.ok(f"Container {container_name} stopped")

        except NotFound:
            return OperationResult.ok(f"Container {container_name} not found")
        except Exception as e:
            logger.error("Failed to stop container", extra={"app_id": app_id, "error": str(e)})
            return OperationResult.fail(f"Failed to stop container: {e}", error=str(e))

    async def remove_container(self, app_id: str, force: bool = False) -> OperationResult:
        container_name = self.get_container_name(app_id)
        try:
            container = await self._call(self._find_container, app_id)
            if container is None:
                return OperationResult.ok(f"Container {container_name} not found")

            await self._call(container.remove, force=force)
            logger.info(
                "Container removed",
                extra={"engine": self.engine_type, "app_id": app_id, "force": force},
            )
            return OperationResult.ok(f"Container {container_name} removed")

        except NotFound:
            return OperationResult.ok(f"Container {container_name} not found")
        except Exception as e:
            logger.error("Failed to remove container", extra={"app_id": app_id, "error": str(e)})
            return OperationResult.fail(f"Failed to remove container: {e}", error=str(e))

    async def cleanup_volumes(self, app_id: str) -> OperationResult:
        """
        Stop and remove the app's container, then delete its cache volume.

        Every step is attempted; only the volume removal decides the result.
        """
        await self.stop_container(app_id)
        await self.remove_container(app_id, force=True)

        volume_name = self.get_volume_name(app_id)
        try:
            volume = await self._call(self.client.volumes.get, volume_name)
            await self._call(volume.remove, force=True)
        except NotFound:
            return OperationResult.ok(f"Volume {volume_name} already absent")
        except Exception as e:
            logger.error(
                "Failed to remove volume",
                extra={"app_id": app_id, "volume_name": volume_name, "error": str(e)},
            )
            return OperationResult.fail(f"Failed to remove volume: {e}", error=str(e))

        logger.info("Volume removed", extra={"app_id": app_id, "volume_name": volume_name})
        return OperationResult.ok(f"Volume {volume_name} removed")

    # Inspection

    async def get_container_status(self, app_id: str) -> ContainerStatus:
        try:
            container = await self._call(self._find_container, app_id)
        except Exception as e:
            logger.warning(
                "Failed to inspect container", extra={"app_id": app_id, "error": str(e)}
            )
            return ContainerStatus.absent(app_id, error=str(e))

        if container is None:
            return ContainerStatus.absent(app_id)

        attrs = container.attrs or {}
        runtime_state = attrs.get("State", {})
        state = ContainerState.from_runtime(
            runtime_state.get("Status", container.status), runtime_state.get("ExitCode")
        )
        is_running = state == ContainerState.RUNNING
        port = parse_host_port(
            attrs.get("NetworkSettings", {}).get("Ports"),
            attrs.get("HostConfig", {}).get("PortBindings"),
        )

        error = None
        if state == ContainerState.CRASHED:
            status = "error"
            error = f"Container exited with code {runtime_state.get('ExitCode')}"
        elif state == ContainerState.STARTING:
            status = "starting"
        elif is_running:
            status = "running"
        else:
            status = "stopped"

        is_ready = False
        has_dependencies = False
        if is_running:
            is_ready = self.readiness.is_ready(await self.get_logs(app_id))
            has_dependencies = await self.has_dependencies_installed(app_id)

        return ContainerStatus(
            app_id=app_id,
            is_running=is_running,
            is_ready=is_ready,
            has_dependencies_installed=has_dependencies,
            container_name=container.name,
            port=port,
            status=status,
            state=state,
            error=error,
        )

    async def container_exists(self, app_id: str) -> bool:
        try:
            return await self._call(self._find_container, app_id) is not None
        except Exception:
            return False

    async def is_container_running(self, app_id: str) -> bool:
        try:
            container = await self._call(self._find_container, app_id)
        except Exception:
            return False
        return container is not None and container.status == "running"

    async def is_container_ready(self, app_id: str) -> bool:
        if not await self.is_container_running(app_id):
            return False
        return self.readiness.is_ready(await self.get_logs(app_id))

    async def has_dependencies_installed(self, app_id: str) -> bool:
        try:
            container = await self._call(self._find_container, app_id)
            if container is None:
                return False
            result = await self._call(container.exec_run, ["sh", "-c", DEPENDENCY_PROBE])
        except Exception as e:
            logger.debug("Dependency probe failed", extra={"app_id": app_id, "error": str(e)})
            return False
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return "exists" in output

    # Commands and files

    async def sync_files_to_container(self, options: SyncFilesOptions) -> OperationResult:
        """
        Nudge the dev server's file watcher for changed files.

        Files reach the container through the bind mount; touching them inside
        the container makes watchers that miss host events pick them up.
        """
        app_id = options.app_id
        if not await self.is_container_running(app_id):
            return OperationResult.fail(
                f"Container for app {app_id} is not running",
                error="Container is not running",
            )

        if not options.file_paths:
            return OperationResult.ok("No files to sync")

        container = await self._call(self._find_container, app_id)
        synced = []
        failed = []
        for file_path in options.file_paths:
            target = f"{APP_MOUNT_PATH}/{file_path.lstrip('/')}"
            try:
                result = await self._call(container.exec_run, ["touch", target])
                if result.exit_code != 0:
                    raise DockerException(
                        result.output.decode("utf-8", errors="replace") if result.output else ""
                    )
                synced.append(file_path)
            except Exception as e:
                failed.append(file_path)
                logger.warning(
                    "Failed to sync file",
                    extra={"app_id": app_id, "file_path": file_path, "error": str(e)},
                )

        return OperationResult.ok(
            f"Synced {len(synced)} of {len(options.file_paths)} files",
            data={"synced": synced, "failed": failed},
        )

    async def exec_in_container(self, app_id: str, command: List[str]) -> OperationResult:
        try:
            container = await self._call(self._find_container, app_id)
            if container is None:
                return OperationResult.fail(
                    f"Container for app {app_id} not found",
                    error="Container not found",
                )
            result = await self._call(container.exec_run, command, workdir=APP_MOUNT_PATH)
        except Exception as e:
            return OperationResult.fail(f"Failed to execute command: {e}", error=str(e))

        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        if result.exit_code != 0:
            return OperationResult.fail(
                f"Command exited with code {result.exit_code}", error=output
            )
        return OperationResult.ok("Command executed", data={"output": output, "exit_code": 0})

    # Logs and events

    @staticmethod
    def _parse_since(since: Optional[str]) -> int | datetime | None:
        """Accept unix seconds or an ISO-8601 timestamp."""
        if not since:
            return None
        if since.isdigit():
            return int(since)
        return datetime.fromisoformat(since.replace("Z", "+00:00"))

    def _log_kwargs(
        self, tail: Optional[int], since: Optional[str], timestamps: bool
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "stdout": True,
            "stderr": True,
            "timestamps": timestamps,
            "tail": tail if tail is not None else "all",
        }
        parsed_since = self._parse_since(since)
        if parsed_since is not None:
            kwargs["since"] = parsed_since
        return kwargs

    async def get_container_logs(self, app_id: str, lines: int = 100) -> str:
        return await self.get_logs(app_id, tail=lines)

    async def get_logs(
        self,
        app_id: str,
        tail: Optional[int] = None,
        since: Optional[str] = None,
        timestamps: bool = False,
    ) -> str:
        try:
            container = await self._call(self._find_container, app_id)
            if container is None:
                return ""
            logs = await self._call(container.logs, **self._log_kwargs(tail, since, timestamps))
        except Exception as e:
            logger.debug("Failed to get logs", extra={"app_id": app_id, "error": str(e)})
            return ""
        return logs.decode("utf-8", errors="replace") if isinstance(logs, bytes) else str(logs)

    async def stream_logs(
        self,
        app_id: str,
        follow: bool = True,
        tail: Optional[int] = None,
        since: Optional[str] = None,
        timestamps: bool = False,
    ) -> AsyncIterator[str]:
        """
        Stream log lines as they are produced.

        The SDK stream is read on a worker thread and handed over through a
        queue. A trailing partial line is held back until it is completed or
        the stream ends. Closing the iterator closes the runtime stream.

        Yields:
            Log lines without their line terminator
        """
        container = await self._call(self._find_container, app_id)
        if container is None:
            return

        kwargs = self._log_kwargs(tail, since, timestamps)
        stream = await self._call(container.logs, stream=True, follow=follow, **kwargs)

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def put(item: Optional[bytes]) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Loop already closed
                pass

        def pump() -> None:
            try:
                for chunk in stream:
                    put(chunk)
            except Exception as e:
                logger.debug("Log stream ended", extra={"app_id": app_id, "error": str(e)})
            finally:
                put(None)

        reader = asyncio.ensure_future(asyncio.to_thread(pump))
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                buffer += decoder.decode(chunk)
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    yield line.rstrip("\r")
            buffer += decoder.decode(b"", final=True)
            if buffer:
                yield buffer.rstrip("\r")
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
            if reader.done():
                reader.result()

    async def get_events(self, app_id: str) -> List[Dict[str, Any]]:
        """
        Runtime events (start, stop, die, ...) for the app's container over the last 24h.

        Each event line is parsed independently; malformed lines are dropped.
        """
        until = datetime.now(timezone.utc)
        since = until - EVENTS_WINDOW

        def collect() -> bytes:
            stream = self.client.events(
                since=since,
                until=until,
                filters={"container": self.get_container_name(app_id)},
                decode=False,
            )
            return b"".join(stream)

        try:
            raw = await self._call(collect)
        except Exception as e:
            logger.debug("Failed to get events", extra={"app_id": app_id, "error": str(e)})
            return []
        return parse_json_lines([raw])

    # Discovery

    async def list_containers(self) -> List[DiscoveredContainer]:
        """Containers on the runtime whose name marks them as application containers."""
        try:
            containers = await self._call(
                self.client.containers.list, all=True, filters={"name": CONTAINER_PREFIX}
            )
        except Exception as e:
            logger.warning(
                "Failed to list containers", extra={"engine": self.engine_type, "error": str(e)}
            )
            return []

        discovered = []
        for container in containers:
            app_id = app_id_from_container_name(container.name)
            if app_id is None:
                continue
            attrs = container.attrs or {}
            discovered.append(
                DiscoveredContainer(
                    app_id=app_id,
                    container_name=container.name,
                    port=parse_host_port(
                        attrs.get("NetworkSettings", {}).get("Ports"),
                        attrs.get("HostConfig", {}).get("PortBindings"),
                    ),
                    is_running=container.status == "running",
                    status=container.status,
                )
            )
        return discovered

    def close(self) -> None:
        """Release the SDK connection."""
        self._client_manager.close()
