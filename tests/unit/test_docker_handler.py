"""Unit tests for the Docker-API engine handler."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from docker.errors import APIError, DockerException, NotFound

from mcp_apphost.engines.base import ContainerState, RunContainerOptions, SyncFilesOptions
from mcp_apphost.engines.docker_handler import DockerHandler
from mcp_apphost.utils.exceptions import EngineUnavailableError


@pytest.fixture
def runtime(mock_docker_client, container_factory):
    """In-memory container table behind the mock client's get/run."""
    containers = {}

    def get(name):
        if name in containers:
            return containers[name]
        raise NotFound("No such container")

    def run(**kwargs):
        host_port = list(kwargs["ports"].values())[0]
        container = container_factory(kwargs["name"], status="running", host_port=host_port)
        containers[kwargs["name"]] = container
        return container

    mock_docker_client.containers.get.side_effect = get
    mock_docker_client.containers.run.side_effect = run
    return containers


@pytest.fixture
def handler(settings, mock_docker_client):
    """Docker handler over the mock client with no real sleeping."""
    return DockerHandler(settings, client=mock_docker_client, sleep=AsyncMock())


def run_options(app_id="7", port=32107, **kwargs):
    return RunContainerOptions(app_id=app_id, app_path=f"/srv/apps/{app_id}", port=port, **kwargs)


@pytest.mark.asyncio
async def test_initialize_unreachable_daemon(handler, mock_docker_client):
    """Test that an unreachable daemon raises EngineUnavailableError."""
    mock_docker_client.ping.side_effect = DockerException("connection refused")

    with pytest.raises(EngineUnavailableError) as exc_info:
        await handler.initialize()
    assert "connection refused" in str(exc_info.value)
    assert await handler.is_available() is False


@pytest.mark.asyncio
async def test_version_and_info(handler, mock_docker_client):
    """Test engine version and info lookups."""
    mock_docker_client.version.return_value = {"Version": "26.1.0"}
    mock_docker_client.info.side_effect = APIError("boom")

    assert await handler.get_version() == "26.1.0"
    assert (await handler.get_engine_info())["error"]


@pytest.mark.asyncio
async def test_run_container_launch_options(handler, mock_docker_client, runtime):
    """Test the options a container is launched with."""
    result = await handler.run_container(
        run_options(environment={"NODE_ENV": "development"}, memory_limit="512m")
    )

    assert result.success is True
    assert result.data["container_name"] == "apphost-app-7"
    assert result.data["port"] == 32107

    kwargs = mock_docker_client.containers.run.call_args.kwargs
    assert kwargs["name"] == "apphost-app-7"
    assert kwargs["detach"] is True
    assert kwargs["ports"] == {"32107/tcp": 32107}
    assert kwargs["nano_cpus"] == 1_000_000_000
    assert kwargs["mem_limit"] == "512m"
    assert kwargs["working_dir"] == "/app"
    assert kwargs["labels"] == {"com.apphost.app_id": "7"}
    assert kwargs["environment"]["PORT"] == "32107"
    assert kwargs["environment"]["NODE_ENV"] == "development"
    assert kwargs["volumes"]["/srv/apps/7"] == {"bind": "/app", "mode": "rw"}
    assert kwargs["volumes"]["apphost-app-7-store"]["bind"] == "/app/.pnpm-store"
    assert kwargs["command"][:2] == ["sh", "-c"]
    assert "--port 32107" in kwargs["command"][2]

    mock_docker_client.volumes.create.assert_called_once_with(name="apphost-app-7-store")


@pytest.mark.asyncio
async def test_run_container_reclaims_port_holder(
    handler, mock_docker_client, runtime, container_factory
):
    """Test that a container publishing the target port is removed before launch."""
    order = []
    squatter = container_factory("some-other-service", status="running", host_port=32107)
    squatter.stop.side_effect = lambda **kwargs: order.append("stop squatter")
    squatter.remove.side_effect = lambda **kwargs: order.append("remove squatter")
    bystander = container_factory("unrelated", status="running", host_port=32150)
    mock_docker_client.containers.list.return_value = [squatter, bystander]
    launch = mock_docker_client.containers.run.side_effect

    def run(**kwargs):
        order.append("run")
        return launch(**kwargs)

    mock_docker_client.containers.run.side_effect = run

    result = await handler.run_container(run_options())

    assert result.success is True
    squatter.remove.assert_called_once_with(force=True)
    bystander.remove.assert_not_called()
    assert order == ["stop squatter", "remove squatter", "run"]
    handler._sleep.assert_any_await(1.0)
    assert "apphost-app-7" in runtime
    assert result.data["reclaimed"] == ["some-other-service"]


@pytest.mark.asyncio
async def test_run_container_reclaims_same_name(handler, runtime, container_factory):
    """Test that a stale container with the app's name is stopped and removed."""
    stale = container_factory("apphost-app-7", status="running", host_port=32107)
    stale.remove.side_effect = lambda **kwargs: runtime.pop("apphost-app-7")
    runtime["apphost-app-7"] = stale

    result = await handler.run_container(run_options())

    assert result.success is True
    stale.stop.assert_called_once()
    stale.remove.assert_called_once_with(force=True)
    assert runtime["apphost-app-7"] is not stale


@pytest.mark.asyncio
async def test_run_container_reclaim_disabled(
    settings_factory, mock_docker_client, runtime, container_factory
):
    """Test that an existing container fails the run when reclaim is disabled."""
    handler = DockerHandler(
        settings_factory(auto_reclaim_port=False), client=mock_docker_client, sleep=AsyncMock()
    )
    runtime["apphost-app-7"] = container_factory("apphost-app-7", status="exited")

    result = await handler.run_container(run_options())

    assert result.success is False
    assert "APPHOST_AUTO_RECLAIM_PORT" in result.error
    mock_docker_client.containers.run.assert_not_called()


@pytest.mark.asyncio
async def test_run_container_exits_during_startup(handler, mock_docker_client, runtime):
    """Test that a container dying before the settle check returns its logs."""

    def run(**kwargs):
        container = MagicMock()
        container.name = kwargs["name"]
        container.status = "exited"
        container.logs.return_value = b"[ERROR] No package.json found\n"
        runtime[kwargs["name"]] = container
        return container

    mock_docker_client.containers.run.side_effect = run

    result = await handler.run_container(run_options())

    assert result.success is False
    assert "exited during startup" in result.message
    assert "No package.json found" in result.error
    runtime["apphost-app-7"].logs.assert_called_with(
        stdout=True, stderr=True, timestamps=False, tail=50
    )


@pytest.mark.asyncio
async def test_run_container_sdk_error(handler, mock_docker_client, runtime):
    """Test that SDK failures become failed results with the message."""
    mock_docker_client.containers.run.side_effect = APIError("port is already allocated")

    result = await handler.run_container(run_options())

    assert result.success is False
    assert "port is already allocated" in result.error


@pytest.mark.asyncio
async def test_stop_container_is_idempotent(handler, runtime, container_factory):
    """Test stop on absent, stopped and running containers."""
    assert (await handler.stop_container("1")).success is True

    runtime["apphost-app-2"] = container_factory("apphost-app-2", status="exited")
    assert (await handler.stop_container("2")).success is True
    runtime["apphost-app-2"].stop.assert_not_called()

    runtime["apphost-app-3"] = container_factory("apphost-app-3", status="running")
    assert (await handler.stop_container("3")).success is True
    runtime["apphost-app-3"].stop.assert_called_once_with(timeout=10)


@pytest.mark.asyncio
async def test_remove_container(handler, runtime, container_factory):
    """Test removal of absent and present containers."""
    assert (await handler.remove_container("1")).success is True

    runtime["apphost-app-2"] = container_factory("apphost-app-2")
    result = await handler.remove_container("2", force=True)
    assert result.success is True
    runtime["apphost-app-2"].remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_remove_container_already_gone(handler, runtime, container_factory):
    """Test that a container vanishing mid-removal counts as removed."""
    runtime["apphost-app-2"] = container_factory("apphost-app-2")
    runtime["apphost-app-2"].remove.side_effect = NotFound("gone")

    assert (await handler.remove_container("2")).success is True


@pytest.mark.asyncio
async def test_status_absent(handler, runtime):
    """Test status of an app without a container."""
    status = await handler.get_container_status("1")

    assert status.is_running is False
    assert status.status == "stopped"
    assert status.state == ContainerState.ABSENT
    assert status.container_name is None
    assert status.port is None


@pytest.mark.asyncio
async def test_status_running_and_ready(
    handler, runtime, container_factory, exec_result_factory
):
    """Test status of a running, ready container with dependencies."""
    container = container_factory("apphost-app-1", status="running", host_port=32101)
    container.logs.return_value = b"  VITE v5.2.0  ready in 300 ms\n"
    container.exec_run.return_value = exec_result_factory(0, b"exists\n")
    runtime["apphost-app-1"] = container

    status = await handler.get_container_status("1")

    assert status.is_running is True
    assert status.is_ready is True
    assert status.has_dependencies_installed is True
    assert status.status == "running"
    assert status.port == 32101
    assert status.container_name == "apphost-app-1"


@pytest.mark.asyncio
async def test_status_crashed(handler, runtime, container_factory):
    """Test status of a container that exited with an error."""
    runtime["apphost-app-1"] = container_factory(
        "apphost-app-1", status="exited", host_port=32101, exit_code=1
    )

    status = await handler.get_container_status("1")

    assert status.state == ContainerState.CRASHED
    assert status.status == "error"
    assert status.port == 32101
    assert "code 1" in status.error


@pytest.mark.asyncio
async def test_ready_requires_running_container(handler, runtime, container_factory):
    """Test that a readiness marker only counts while the container runs."""
    container = container_factory("apphost-app-1", status="exited")
    container.logs.return_value = b"ready in 412 ms\n"
    runtime["apphost-app-1"] = container
    assert await handler.is_container_ready("1") is False

    container.status = "running"
    assert await handler.is_container_ready("1") is True

    container.logs.return_value = b"installing dependencies...\n"
    assert await handler.is_container_ready("1") is False


@pytest.mark.asyncio
async def test_inspection_errors_are_false(handler, mock_docker_client):
    """Test that inspection failures degrade to False."""
    mock_docker_client.containers.get.side_effect = APIError("daemon hiccup")

    assert await handler.container_exists("1") is False
    assert await handler.is_container_running("1") is False
    assert await handler.is_container_ready("1") is False
    assert await handler.has_dependencies_installed("1") is False


@pytest.mark.asyncio
async def test_dependencies_missing(handler, runtime, container_factory, exec_result_factory):
    """Test the node_modules probe reporting missing."""
    container = container_factory("apphost-app-1")
    container.exec_run.return_value = exec_result_factory(0, b"missing\n")
    runtime["apphost-app-1"] = container

    assert await handler.has_dependencies_installed("1") is False
    command = container.exec_run.call_args.args[0]
    assert command[:2] == ["sh", "-c"]
    assert "/app/node_modules" in command[2]


@pytest.mark.asyncio
async def test_sync_requires_running_container(handler, runtime):
    """Test that syncing into a stopped app fails."""
    result = await handler.sync_files_to_container(SyncFilesOptions(app_id="1", file_paths=["a"]))
    assert result.success is False


@pytest.mark.asyncio
async def test_sync_touches_files(handler, runtime, container_factory, exec_result_factory):
    """Test that each file is touched under /app with leading slashes stripped."""
    container = container_factory("apphost-app-1")
    container.exec_run.side_effect = [exec_result_factory(0), exec_result_factory(1, b"denied")]
    runtime["apphost-app-1"] = container

    result = await handler.sync_files_to_container(
        SyncFilesOptions(app_id="1", file_paths=["/src/App.tsx", "locked.txt"])
    )

    assert result.success is True
    assert result.data == {"synced": ["/src/App.tsx"], "failed": ["locked.txt"]}
    assert container.exec_run.call_args_list[0].args[0] == ["touch", "/app/src/App.tsx"]


@pytest.mark.asyncio
async def test_sync_without_files(handler, runtime, container_factory):
    """Test that an empty file list is a no-op success."""
    runtime["apphost-app-1"] = container_factory("apphost-app-1")

    result = await handler.sync_files_to_container(SyncFilesOptions(app_id="1"))

    assert result.success is True
    runtime["apphost-app-1"].exec_run.assert_not_called()


@pytest.mark.asyncio
async def test_exec_in_container(handler, runtime, container_factory, exec_result_factory):
    """Test exec output and non-zero exit handling."""
    container = container_factory("apphost-app-1")
    container.exec_run.side_effect = [
        exec_result_factory(0, b"v22.1.0\n"),
        exec_result_factory(2, b"ls: cannot access 'nope'\n"),
    ]
    runtime["apphost-app-1"] = container

    ok = await handler.exec_in_container("1", ["node", "--version"])
    assert ok.success is True
    assert ok.data["output"] == "v22.1.0\n"
    container.exec_run.assert_any_call(["node", "--version"], workdir="/app")

    failed = await handler.exec_in_container("1", ["ls", "nope"])
    assert failed.success is False
    assert failed.error == "ls: cannot access 'nope'\n"


@pytest.mark.asyncio
async def test_get_logs(handler, runtime, container_factory):
    """Test log retrieval options and error fallback."""
    assert await handler.get_logs("1") == ""

    container = container_factory("apphost-app-1")
    container.logs.return_value = b"line one\nline two\n"
    runtime["apphost-app-1"] = container

    assert await handler.get_container_logs("1", 20) == "line one\nline two\n"
    container.logs.assert_called_with(stdout=True, stderr=True, timestamps=False, tail=20)

    await handler.get_logs("1", since="1767225600", timestamps=True)
    assert container.logs.call_args.kwargs["since"] == 1767225600
    assert container.logs.call_args.kwargs["tail"] == "all"

    container.logs.side_effect = APIError("gone")
    assert await handler.get_logs("1") == ""


class FakeLogStream:
    """Stand-in for the SDK's cancellable log stream."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.close = MagicMock()

    def __iter__(self):
        return iter(self.chunks)


@pytest.mark.asyncio
async def test_stream_logs_buffers_partial_lines(handler, runtime, container_factory):
    """Test that chunks are reassembled into whole lines."""
    container = container_factory("apphost-app-1")
    accented = "café\n".encode()
    stream = FakeLogStream([b"hel", b"lo\nwor", b"ld\r\n", accented[:4], accented[4:], b"tail"])
    container.logs.return_value = stream
    runtime["apphost-app-1"] = container

    lines = [line async for line in handler.stream_logs("1")]

    assert lines == ["hello", "world", "café", "tail"]
    assert container.logs.call_args.kwargs["stream"] is True
    assert container.logs.call_args.kwargs["follow"] is True
    stream.close.assert_called_once()


@pytest.mark.asyncio
async def test_stream_logs_early_close_closes_stream(handler, runtime, container_factory):
    """Test that abandoning the iterator closes the runtime stream."""
    container = container_factory("apphost-app-1")
    stream = FakeLogStream([b"first\nsecond\n", b"third\n"])
    container.logs.return_value = stream
    runtime["apphost-app-1"] = container

    iterator = handler.stream_logs("1")
    assert await iterator.__anext__() == "first"
    await iterator.aclose()

    stream.close.assert_called_once()


@pytest.mark.asyncio
async def test_stream_logs_absent_container(handler, runtime):
    """Test that streaming an absent container yields nothing."""
    assert [line async for line in handler.stream_logs("1")] == []


@pytest.mark.asyncio
async def test_get_events(handler, mock_docker_client):
    """Test that events are parsed line by line and bad lines dropped."""
    mock_docker_client.events.return_value = iter(
        [b'{"status": "start", "id": "abc"}\n', b'garbage\n{"status": "die"}\n']
    )

    events = await handler.get_events("5")

    assert [event["status"] for event in events] == ["start", "die"]
    kwargs = mock_docker_client.events.call_args.kwargs
    assert kwargs["filters"] == {"container": "apphost-app-5"}
    assert kwargs["decode"] is False
    assert (kwargs["until"] - kwargs["since"]).total_seconds() == 24 * 3600


@pytest.mark.asyncio
async def test_get_events_error(handler, mock_docker_client):
    """Test that event failures yield no events."""
    mock_docker_client.events.side_effect = APIError("nope")
    assert await handler.get_events("5") == []


@pytest.mark.asyncio
async def test_cleanup_volumes(handler, mock_docker_client, runtime, container_factory):
    """Test cleanup stops, removes and deletes the cache volume."""
    container = container_factory("apphost-app-1")
    runtime["apphost-app-1"] = container
    volume = MagicMock()
    mock_docker_client.volumes.get.side_effect = None
    mock_docker_client.volumes.get.return_value = volume

    result = await handler.cleanup_volumes("1")

    assert result.success is True
    container.stop.assert_called_once()
    container.remove.assert_called_once_with(force=True)
    mock_docker_client.volumes.get.assert_called_with("apphost-app-1-store")
    volume.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_cleanup_volumes_absent_volume(handler, runtime):
    """Test that a missing volume is still a successful cleanup."""
    assert (await handler.cleanup_volumes("1")).success is True


@pytest.mark.asyncio
async def test_cleanup_volumes_failure(handler, mock_docker_client, runtime):
    """Test that a failed volume removal fails the cleanup."""
    volume = MagicMock()
    volume.remove.side_effect = APIError("volume is in use")
    mock_docker_client.volumes.get.side_effect = None
    mock_docker_client.volumes.get.return_value = volume

    result = await handler.cleanup_volumes("1")

    assert result.success is False
    assert "volume is in use" in result.error


@pytest.mark.asyncio
async def test_list_containers(handler, mock_docker_client, container_factory):
    """Test discovery of application containers."""
    mock_docker_client.containers.list.return_value = [
        container_factory("apphost-app-1", status="running", host_port=32100),
        container_factory("apphost-app-2", status="exited", host_port=32101),
        container_factory("apphost-app-", status="running"),
    ]

    discovered = await handler.list_containers()

    assert [(c.app_id, c.port, c.is_running) for c in discovered] == [
        ("1", 32100, True),
        ("2", 32101, False),
    ]
    mock_docker_client.containers.list.assert_called_once_with(
        all=True, filters={"name": "apphost-app-"}
    )
