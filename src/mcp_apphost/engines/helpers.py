"""Helpers shared by the container engine handlers."""

import asyncio
import json
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from mcp_apphost.engines.base import VolumeMount
from mcp_apphost.utils import get_logger

logger = get_logger(__name__)

APP_MOUNT_PATH = "/app"
STORE_MOUNT_PATH = "/app/.pnpm-store"


@dataclass
class CommandResult:
    """Outcome of an external command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(args: List[str], timeout: Optional[float] = None) -> CommandResult:
    """
    Run an external command without a shell.

    Args:
        args: Program and arguments
        timeout: Seconds before the process is killed

    Returns:
        CommandResult with decoded output

    Raises:
        FileNotFoundError: If the program is not installed
        asyncio.TimeoutError: If the command exceeds ``timeout``
    """
    logger.debug("Running command", extra={"command": args})
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise

    return CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def parse_json(text: str | bytes, default: Any = None) -> Any:
    """Parse a JSON document, returning ``default`` when it is malformed."""
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return default


def parse_json_lines(lines: Iterable[str | bytes]) -> List[Dict[str, Any]]:
    """
    Parse newline-delimited JSON, one object per line.

    Lines that are blank or fail to parse are dropped independently.
    """
    records = []
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        for part in line.splitlines():
            if not part.strip():
                continue
            record = parse_json(part)
            if isinstance(record, dict):
                records.append(record)
    return records


async def wait_for_condition(
    condition: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> bool:
    """
    Poll an async condition until it holds or the timeout expires.

    The condition is checked once up front and then after every ``interval``
    seconds, for at most ``timeout`` seconds of waiting.

    Returns:
        True if the condition was met in time
    """
    polls = int(timeout // interval) if interval > 0 else 0
    for poll in range(polls + 1):
        if await condition():
            return True
        if poll < polls:
            await sleep(interval)
    return False


def build_environment(port: int, overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Environment for an application container; overrides win."""
    environment = {
        "PORT": str(port),
        "VITE_PORT": str(port),
        "PNPM_STORE_PATH": STORE_MOUNT_PATH,
    }
    environment.update(overrides or {})
    return environment


def build_volumes(
    app_path: str,
    volume_name: str,
    mounts: Iterable[VolumeMount] = (),
    selinux_label: bool = False,
) -> Dict[str, Dict[str, str]]:
    """
    Build the docker SDK ``volumes`` mapping for an application container.

    Args:
        app_path: Host path of the application directory
        volume_name: Dependency-cache volume name
        mounts: Extra bind mounts
        selinux_label: Add the private ``Z`` relabel option to read-write mounts

    Returns:
        Mapping of host path or volume name to ``{"bind": ..., "mode": ...}``
    """
    rw_mode = "rw,Z" if selinux_label else "rw"

    volumes = {
        app_path: {"bind": APP_MOUNT_PATH, "mode": rw_mode},
        volume_name: {"bind": STORE_MOUNT_PATH, "mode": rw_mode},
    }
    for mount in mounts:
        volumes[mount.host] = {
            "bind": mount.container,
            "mode": "ro" if mount.read_only else rw_mode,
        }
    return volumes


def rewrite_host_path(
    app_path: str, apps_base_dir: str, host_apps_base_dir: Optional[str]
) -> str:
    """
    Translate an app path to the path the container runtime sees.

    When this process runs inside a container itself, bind mounts are resolved
    by the runtime on the host, so the ``apps_base_dir`` prefix is swapped for
    ``host_apps_base_dir``. Paths outside ``apps_base_dir`` are left alone.
    """
    if not host_apps_base_dir:
        return app_path

    base = os.path.normpath(os.path.abspath(apps_base_dir))
    path = os.path.normpath(os.path.abspath(app_path))
    if path != base and not path.startswith(base + os.sep):
        return app_path

    relative = os.path.relpath(path, base)
    if relative == ".":
        return host_apps_base_dir
    return os.path.join(host_apps_base_dir, relative)


def parse_cpu_limit(value: str | float | int) -> int:
    """
    Convert a CPU count ("1", "0.5") to the SDK's ``nano_cpus``.

    Raises:
        ValueError: If the value is not a positive number
    """
    cpus = float(value)
    if cpus <= 0:
        raise ValueError(f"CPU limit must be positive, got {value!r}")
    return int(cpus * 1_000_000_000)


def parse_host_port(
    ports: Optional[Dict[str, Any]],
    port_bindings: Optional[Dict[str, Any]] = None,
) -> Optional[int]:
    """
    Extract the first published host port of a container.

    Args:
        ports: ``NetworkSettings.Ports`` (only populated while running)
        port_bindings: ``HostConfig.PortBindings`` (kept while stopped)

    Returns:
        Host port, or None if nothing is published
    """
    for mapping in (ports, port_bindings):
        for bindings in (mapping or {}).values():
            for binding in bindings or []:
                host_port = binding.get("HostPort") if isinstance(binding, dict) else None
                if host_port:
                    try:
                        return int(host_port)
                    except ValueError:
                        continue
    return None


def published_ports(
    ports: Optional[Dict[str, Any]],
    port_bindings: Optional[Dict[str, Any]] = None,
) -> set[int]:
    """All host ports a container publishes or has bound."""
    found = set()
    for mapping in (ports, port_bindings):
        for bindings in (mapping or {}).values():
            for binding in bindings or []:
                host_port = binding.get("HostPort") if isinstance(binding, dict) else None
                if host_port and str(host_port).isdigit():
                    found.add(int(host_port))
    return found
