"""Test configuration and fixtures."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from docker.errors import NotFound

from mcp_apphost.config import Settings
from mcp_apphost.engines.base import ContainerStatus, OperationResult


def make_settings(**overrides) -> Settings:
    """Settings isolated from the developer's .env file."""
    values = {"enabled": True, "engine": "docker", "run_settle_interval_s": 0}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_container(name, status="running", host_port=None, exit_code=0):
    """Mock docker SDK container with the attributes the handlers read."""
    container = MagicMock()
    container.name = name
    container.status = status
    ports = {"5173/tcp": [{"HostIp": "0.0.0.0", "HostPort": str(host_port)}]} if host_port else {}
    container.attrs = {
        "State": {"Status": status, "ExitCode": exit_code},
        "NetworkSettings": {"Ports": ports if status == "running" else {}},
        "HostConfig": {"PortBindings": ports},
    }
    return container


def exec_result(exit_code=0, output=b""):
    """Result object shaped like docker's ExecResult."""
    return SimpleNamespace(exit_code=exit_code, output=output)


@pytest.fixture
def settings():
    """Containerization enabled on docker with no settle delay."""
    return make_settings()


@pytest.fixture
def mock_docker_client():
    """Mock docker client whose containers/volumes lookups miss by default."""
    client = MagicMock()
    client.containers.get.side_effect = NotFound("No such container")
    client.containers.list.return_value = []
    client.volumes.get.side_effect = NotFound("No such volume")
    return client


@pytest.fixture
def mock_service():
    """Mock containerization service."""
    service = MagicMock()
    service.engine_type = "docker"
    service.default_port = 32100
    service.is_enabled.return_value = True
    service.is_container_running = AsyncMock(return_value=False)
    service.container_exists = AsyncMock(return_value=False)
    service.run_container = AsyncMock(
        return_value=OperationResult.ok("started", data={"container_name": "apphost-app-1"})
    )
    service.quick_start_container = AsyncMock(
        return_value=OperationResult.ok("started", data={"container_name": "apphost-app-1"})
    )
    service.stop_container = AsyncMock(return_value=OperationResult.ok("stopped"))
    service.remove_container = AsyncMock(return_value=OperationResult.ok("removed"))
    service.remove_volumes = AsyncMock(return_value=OperationResult.ok("volume removed"))
    service.sync_files_to_container = AsyncMock(return_value=OperationResult.ok("synced"))
    service.get_container_status = AsyncMock(
        side_effect=lambda app_id: ContainerStatus.absent(app_id)
    )
    service.get_logs = AsyncMock(return_value="")
    service.get_events = AsyncMock(return_value=[])
    service.list_containers = AsyncMock(return_value=[])
    return service


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings_factory():
    """Build isolated settings with overrides."""
    return make_settings


@pytest.fixture
def container_factory():
    """Build mock docker SDK containers."""
    return make_container


@pytest.fixture
def exec_result_factory():
    """Build docker ExecResult look-alikes."""
    return exec_result
