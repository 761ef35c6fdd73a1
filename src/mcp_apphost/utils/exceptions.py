"""Custom exceptions for MCP AppHost."""

from typing import Iterable


class AppHostError(Exception):
    """Base exception for MCP AppHost errors."""

    pass


class ConfigurationError(AppHostError):
    """Exception raised for invalid or incomplete containerization configuration."""

    pass


class UnsupportedEngineError(ConfigurationError):
    """Exception raised when an unknown container engine is requested."""

    def __init__(self, engine: str, supported: Iterable[str]) -> None:
        """
        Initialize UnsupportedEngineError.

        Args:
            engine: Requested engine type
            supported: Engine types that are registered
        """
        self.engine = engine
        self.supported = sorted(supported)
        super().__init__(
            f"Unsupported container engine: {engine}. "
            f"Supported engines: {', '.join(self.supported)}"
        )


class EngineNotImplementedError(ConfigurationError):
    """Exception raised when a placeholder engine is selected."""

    def __init__(self, engine: str) -> None:
        """
        Initialize EngineNotImplementedError.

        Args:
            engine: Placeholder engine type
        """
        self.engine = engine
        super().__init__(
            f"{engine} handler not yet implemented. Register a handler for "
            f"'{engine}' with ContainerFactory.register_handler to add support."
        )


class ContainerizationDisabledError(AppHostError):
    """Exception raised when a container operation is requested while disabled."""

    def __init__(self) -> None:
        """Initialize ContainerizationDisabledError."""
        super().__init__("Containerization is disabled. Set APPHOST_ENABLED=true to enable.")


class EngineUnavailableError(AppHostError):
    """Exception raised when the container runtime cannot be reached."""

    def __init__(self, engine: str, reason: str | None = None) -> None:
        """
        Initialize EngineUnavailableError.

        Args:
            engine: Engine type that is unavailable
            reason: Underlying error message, if any
        """
        self.engine = engine
        self.reason = reason
        message = f"{engine} is not available. Please install and start {engine}."
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class PortExhaustedError(AppHostError):
    """Exception raised when no host port is free in the configured range."""

    def __init__(self, app_id: str, port_range: str) -> None:
        """
        Initialize PortExhaustedError.

        Args:
            app_id: Application that requested a port
            port_range: Configured range, e.g. "32100-32200"
        """
        self.app_id = app_id
        self.port_range = port_range
        super().__init__(f"No available ports in range {port_range} for app {app_id}")


class AlreadyStartingError(AppHostError):
    """Exception raised when a start is requested while another is in flight."""

    def __init__(self, app_id: str) -> None:
        """
        Initialize AlreadyStartingError.

        Args:
            app_id: Application being started
        """
        self.app_id = app_id
        super().__init__(f"Container for app {app_id} is already starting. Please wait.")


class ContainerStartError(AppHostError):
    """Exception raised when a container fails to start."""

    def __init__(self, app_id: str, message: str, details: str | None = None) -> None:
        """
        Initialize ContainerStartError.

        Args:
            app_id: Application whose container failed
            message: Summary from the engine
            details: Engine error output or tail logs
        """
        self.app_id = app_id
        self.details = details
        super().__init__(f"{message} (app {app_id})")


class ContainerNotRunningError(AppHostError):
    """Exception raised when an operation requires a running container."""

    def __init__(self, app_id: str) -> None:
        """
        Initialize ContainerNotRunningError.

        Args:
            app_id: Application whose container is not running
        """
        self.app_id = app_id
        super().__init__(f"Container for app {app_id} is not running")


class AppNotFoundError(AppHostError):
    """Exception raised when application metadata cannot be resolved."""

    def __init__(self, app_id: str) -> None:
        """
        Initialize AppNotFoundError.

        Args:
            app_id: Application that was not found
        """
        self.app_id = app_id
        super().__init__(f"App {app_id} not found")
