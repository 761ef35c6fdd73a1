"""Docker SDK client management for Docker-API compatible runtimes."""

import docker
from docker import DockerClient
from docker.errors import DockerException

from mcp_apphost.utils.logging import get_logger

logger = get_logger(__name__)


class DockerClientManager:
    """Lazily connects a Docker SDK client to one daemon endpoint."""

    def __init__(self, base_url: str | None = None, engine: str = "docker") -> None:
        """
        Initialize Docker client manager.

        Args:
            base_url: Daemon URL (e.g. ``unix:///run/podman/podman.sock``);
                Docker's environment detection is used when omitted
            engine: Engine type, for log context
        """
        self.base_url = base_url
        self.engine = engine
        self._client: DockerClient | None = None

    def get_client(self) -> DockerClient:
        """
        Get or create the client instance.

        Returns:
            DockerClient instance

        Raises:
            DockerException: If unable to connect to the daemon
        """
        if self._client is None:
            try:
                if self.base_url:
                    client = docker.DockerClient(base_url=self.base_url)
                else:
                    client = docker.from_env()

                # Test connection
                client.ping()
                logger.info(
                    "Successfully connected to container daemon",
                    extra={"engine": self.engine, "base_url": self.base_url},
                )
            except DockerException as e:
                logger.error(
                    "Failed to connect to container daemon",
                    extra={"engine": self.engine, "base_url": self.base_url, "error": str(e)},
                )
                raise
            self._client = client

        return self._client

    def close(self) -> None:
        """Close the client connection."""
        if self._client:
            self._client.close()
            self._client = None
            logger.info("Container daemon connection closed", extra={"engine": self.engine})
