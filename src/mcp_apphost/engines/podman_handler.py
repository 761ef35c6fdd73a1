"""Podman engine handler.

Podman is driven through its Docker-compatible API socket. Read-write bind
mounts carry the ``Z`` SELinux relabel option. On macOS, Podman runs inside a
VM ("machine") whose connection can drop, so the connection is verified
before each command and the machine restarted when it is gone.
"""

import asyncio
import sys
from typing import Any, Awaitable, Callable

from docker import DockerClient

from mcp_apphost.config import Settings
from mcp_apphost.engines.api_handler import DockerApiHandler
from mcp_apphost.engines.helpers import CommandResult, run_command, wait_for_condition
from mcp_apphost.engines.readiness import ReadinessMatcher
from mcp_apphost.utils import get_logger
from mcp_apphost.utils.exceptions import EngineUnavailableError

logger = get_logger(__name__)

MACHINE_STOP_WAIT_S = 2.0
MACHINE_START_WAIT_S = 5.0
MACHINE_POLL_INTERVAL_S = 1.0
MACHINE_COMMAND_TIMEOUT_S = 120.0


class PodmanHandler(DockerApiHandler):
    """Runs application containers on Podman."""

    engine_type = "podman"
    selinux_label = True

    def __init__(
        self,
        settings: Settings,
        client: DockerClient | None = None,
        readiness: ReadinessMatcher | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        platform: str = sys.platform,
        command_runner: Callable[..., Awaitable[CommandResult]] = run_command,
    ) -> None:
        """
        Initialize the handler.

        Args:
            settings: Application settings
            client: Pre-built SDK client; connected lazily from settings when omitted
            readiness: Matcher deciding readiness from logs
            sleep: Coroutine used for settle delays and machine backoff
            platform: Host platform; machine management only applies on ``darwin``
            command_runner: Runs ``podman`` CLI commands
        """
        super().__init__(settings, client=client, readiness=readiness, sleep=sleep)
        self.platform = platform
        self._run_command = command_runner

    def _base_url(self) -> str | None:
        if self.settings.podman_socket:
            return f"unix://{self.settings.podman_socket}"
        return None

    @property
    def uses_machine(self) -> bool:
        return self.platform == "darwin"

    async def _before_command(self) -> None:
        if self.uses_machine:
            await self.ensure_machine_running()

    async def _podman(self, *args: str) -> CommandResult:
        try:
            return await self._run_command(["podman", *args], timeout=MACHINE_COMMAND_TIMEOUT_S)
        except FileNotFoundError as e:
            raise EngineUnavailableError(self.engine_type, "podman CLI not found") from e
        except asyncio.TimeoutError:
            return CommandResult(returncode=-1, stdout="", stderr="podman command timed out")

    async def _connection_ok(self) -> bool:
        result = await self._podman("info")
        return result.ok

    async def ensure_machine_running(self) -> None:
        """
        Make sure the Podman machine accepts connections.

        Recovers by stopping and restarting the machine, up to
        ``podman_machine_retries`` times with a growing wait between attempts.

        Raises:
            EngineUnavailableError: If the machine cannot be brought up
        """
        if await self._connection_ok():
            return

        retries = max(1, self.settings.podman_machine_retries)
        for attempt in range(1, retries + 1):
            logger.warning(
                "Podman machine connection lost, restarting machine",
                extra={"attempt": attempt, "max_attempts": retries},
            )

            await self._podman("machine", "stop")
            await self._sleep(MACHINE_STOP_WAIT_S)

            start = await self._podman("machine", "start")
            if not start.ok:
                logger.warning(
                    "Podman machine start failed",
                    extra={"attempt": attempt, "error": start.stderr.strip()},
                )
            if await wait_for_condition(
                self._connection_ok,
                timeout=MACHINE_START_WAIT_S * attempt,
                interval=MACHINE_POLL_INTERVAL_S,
                sleep=self._sleep,
            ):
                logger.info("Podman machine recovered", extra={"attempt": attempt})
                return

        raise EngineUnavailableError(
            self.engine_type,
            f"Podman machine did not come up after {retries} attempts; "
            "try 'podman machine start' manually",
        )
