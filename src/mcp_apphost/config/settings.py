"""Settings and configuration management for MCP AppHost."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BUILTIN_ENGINES = ("docker", "podman", "tanzu", "kubernetes")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="APPHOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Containerization
    enabled: bool = Field(
        default=False,
        description="Run applications inside containers",
    )

    engine: str = Field(
        default="docker",
        description="Container engine (docker, podman, tanzu, kubernetes or a registered engine)",
    )

    auto_reclaim_port: bool = Field(
        default=True,
        description="Remove stale containers holding an app's name or port before starting",
    )

    # Docker engine
    docker_image: str = Field(
        default="node:22-alpine",
        description="Image used for Docker application containers",
    )

    docker_host: str | None = Field(
        default=None,
        description="Docker daemon URL (defaults to Docker's standard detection)",
    )

    docker_default_port: int = Field(
        default=32100,
        description="Fallback host port for Docker containers",
    )

    # Podman engine
    podman_image: str = Field(
        default="node:22-alpine",
        description="Image used for Podman application containers",
    )

    podman_socket: str | None = Field(
        default="/run/user/1000/podman/podman.sock",
        description="Path to the Podman API socket",
    )

    podman_default_port: int = Field(
        default=32100,
        description="Fallback host port for Podman containers",
    )

    podman_machine_retries: int = Field(
        default=3,
        description="Attempts to bring up the Podman machine before giving up",
    )

    # Placeholder engines
    tanzu_api_url: str = Field(default="", description="VMware Tanzu API URL")
    tanzu_namespace: str = Field(default="default", description="Tanzu namespace")
    tanzu_image: str = Field(default="node:22-alpine", description="Tanzu image")

    kubeconfig: str = Field(default="~/.kube/config", description="Path to kubeconfig")
    k8s_namespace: str = Field(default="default", description="Kubernetes namespace")
    k8s_image: str = Field(default="node:22-alpine", description="Kubernetes image")

    # Resource limits
    cpu_limit: str = Field(default="1", description="CPUs per application container")
    memory_limit: str = Field(default="1g", description="Memory per application container")

    # Lifecycle
    inactivity_timeout_s: int = Field(
        default=600,
        description="Seconds without activity before a container is reaped",
    )

    reap_interval_s: int = Field(
        default=120,
        description="Interval in seconds between idle-container sweeps",
    )

    port_range_start: int = Field(default=32100, description="First host port in the pool")
    port_range_end: int = Field(default=32200, description="Last host port in the pool")

    run_settle_interval_s: float = Field(
        default=2.0,
        description="Seconds to wait after launch before checking the container survived",
    )

    # Application files
    apps_base_dir: str = Field(
        default="./apps",
        description="Directory holding one sub-directory per application",
    )

    host_apps_base_dir: str | None = Field(
        default=None,
        description="Host-visible path of apps_base_dir when this process runs in a container",
    )

    default_package_manager: Literal["pnpm", "npm", "yarn"] = Field(
        default="pnpm",
        description="Package manager used when an app has no lock file",
    )

    # Preview proxy
    preview_upstream_host: str = Field(
        default="localhost",
        description="Host the preview proxy uses to reach published container ports",
    )

    preview_timeout_s: float = Field(
        default=30.0,
        description="Upstream timeout in seconds for proxied preview requests",
    )

    preview_settle_delay_s: float = Field(
        default=3.0,
        description="Seconds to wait after a lazy start before proxying",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    log_format: str = Field(
        default="json",
        description="Log format (json or text)",
    )

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host to bind to")
    port: int = Field(default=8000, description="Server port to bind to")

    transport_mode: Literal["stdio", "sse", "streamable-http"] = Field(
        default="streamable-http",
        description="Transport protocol for the MCP server",
    )

    path: str = Field(
        default="/mcp",
        description="Path for HTTP-based transports (sse or streamable-http)",
    )

    @field_validator("engine")
    @classmethod
    def _normalize_engine(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def _validate_engine_config(self) -> "Settings":
        if self.port_range_start > self.port_range_end:
            raise ValueError(
                f"port_range_start ({self.port_range_start}) must not exceed "
                f"port_range_end ({self.port_range_end})"
            )

        if not self.enabled:
            return self

        required = {
            "docker": ("docker_image", "APPHOST_DOCKER_IMAGE"),
            "podman": ("podman_image", "APPHOST_PODMAN_IMAGE"),
            "tanzu": ("tanzu_api_url", "APPHOST_TANZU_API_URL"),
            "kubernetes": ("kubeconfig", "APPHOST_KUBECONFIG"),
        }
        if self.engine in required:
            field_name, env_name = required[self.engine]
            if not getattr(self, field_name):
                raise ValueError(f"{env_name} is required when using the {self.engine} engine")
        return self

    @property
    def port_range(self) -> str:
        """Human-readable port range."""
        return f"{self.port_range_start}-{self.port_range_end}"

    def engine_image(self, engine: str | None = None) -> str:
        """Image configured for an engine."""
        engine = engine or self.engine
        return {
            "docker": self.docker_image,
            "podman": self.podman_image,
            "tanzu": self.tanzu_image,
            "kubernetes": self.k8s_image,
        }.get(engine, self.docker_image)

    def engine_default_port(self, engine: str | None = None) -> int:
        """Fallback host port configured for an engine."""
        engine = engine or self.engine
        if engine == "podman":
            return self.podman_default_port
        return self.docker_default_port


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
