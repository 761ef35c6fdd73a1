"""Docker engine handler."""

from mcp_apphost.engines.api_handler import DockerApiHandler


class DockerHandler(DockerApiHandler):
    """Runs application containers on a Docker daemon.

    Connects to ``APPHOST_DOCKER_HOST`` when set, otherwise to whatever
    ``DOCKER_HOST`` / the default socket resolves to.
    """

    engine_type = "docker"
    selinux_label = False

    def _base_url(self) -> str | None:
        return self.settings.docker_host
