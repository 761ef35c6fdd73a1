"""Container factory: selects and caches the handler for the configured engine."""

from typing import Any, Callable, Dict, List

from mcp_apphost.config import Settings
from mcp_apphost.engines.base import ContainerEngine
from mcp_apphost.engines.docker_handler import DockerHandler
from mcp_apphost.engines.placeholders import KubernetesHandler, TanzuHandler
from mcp_apphost.engines.podman_handler import PodmanHandler
from mcp_apphost.utils import get_logger
from mcp_apphost.utils.exceptions import UnsupportedEngineError

logger = get_logger(__name__)

HandlerConstructor = Callable[[Settings], ContainerEngine]

DEFAULT_REGISTRY: Dict[str, HandlerConstructor] = {
    "docker": DockerHandler,
    "podman": PodmanHandler,
    "tanzu": TanzuHandler,
    "kubernetes": KubernetesHandler,
}


class ContainerFactory:
    """Creates one handler per engine type and hands out the configured one."""

    def __init__(self, settings: Settings) -> None:
        """
        Initialize container factory.

        Args:
            settings: Application settings; ``engine`` selects the current handler
        """
        self.settings = settings
        self._registry: Dict[str, HandlerConstructor] = dict(DEFAULT_REGISTRY)
        self._handlers: Dict[str, ContainerEngine] = {}

    @property
    def engine_type(self) -> str:
        return self.settings.engine

    def is_enabled(self) -> bool:
        return self.settings.enabled

    def supported_engines(self) -> List[str]:
        return sorted(self._registry)

    def is_engine_supported(self, engine: str) -> bool:
        return engine.lower() in self._registry

    def register_handler(self, engine: str, constructor: HandlerConstructor) -> None:
        """
        Register (or replace) the constructor for an engine type.

        Args:
            engine: Engine type name
            constructor: Callable building a handler from settings
        """
        engine = engine.lower()
        self._registry[engine] = constructor
        # A cached instance would otherwise outlive its constructor
        self._handlers.pop(engine, None)
        logger.info("Container engine registered", extra={"engine": engine})

    def get_handler(self, engine: str | None = None) -> ContainerEngine:
        """
        Get the handler for an engine, creating it on first use.

        Args:
            engine: Engine type; the configured engine when omitted

        Returns:
            Cached handler instance

        Raises:
            UnsupportedEngineError: If no constructor is registered for the engine
            EngineNotImplementedError: If the engine is a placeholder
        """
        engine = (engine or self.settings.engine).lower()

        handler = self._handlers.get(engine)
        if handler is not None:
            return handler

        if not self.is_engine_supported(engine):
            raise UnsupportedEngineError(engine, self._registry)

        handler = self._registry[engine](self.settings)
        self._handlers[engine] = handler
        logger.debug("Container engine handler created", extra={"engine": engine})
        return handler

    def get_current_handler(self) -> ContainerEngine:
        return self.get_handler()

    def update_config(self, **changes: Any) -> None:
        """
        Apply settings changes at runtime.

        Switching engines drops every cached handler.
        """
        previous_engine = self.settings.engine
        self.settings = self.settings.model_copy(update=changes)
        if "engine" in changes:
            self.settings.engine = str(changes["engine"]).strip().lower()

        if self.settings.engine != previous_engine:
            self._close_handlers()
            self._handlers.clear()
            logger.info(
                "Container engine changed",
                extra={"previous_engine": previous_engine, "engine": self.settings.engine},
            )

    async def initialize(self) -> None:
        """Initialize the current handler; a no-op while containerization is disabled."""
        if not self.is_enabled():
            logger.info("Containerization disabled, skipping engine initialization")
            return
        await self.get_current_handler().initialize()

    async def is_current_engine_available(self) -> bool:
        if not self.is_enabled():
            return False
        try:
            handler = self.get_current_handler()
        except Exception as e:
            logger.warning("Current engine cannot be created", extra={"error": str(e)})
            return False
        return await handler.is_available()

    def _close_handlers(self) -> None:
        for handler in self._handlers.values():
            close = getattr(handler, "close", None)
            if close is not None:
                close()

    def close(self) -> None:
        """Release every cached handler's runtime connection."""
        self._close_handlers()
        self._handlers.clear()
