"""Engines that are configurable but have no handler yet."""

from mcp_apphost.config import Settings
from mcp_apphost.utils.exceptions import EngineNotImplementedError


class TanzuHandler:
    """VMware Tanzu placeholder."""

    engine_type = "tanzu"

    def __init__(self, settings: Settings) -> None:
        raise EngineNotImplementedError(self.engine_type)


class KubernetesHandler:
    """Kubernetes placeholder."""

    engine_type = "kubernetes"

    def __init__(self, settings: Settings) -> None:
        raise EngineNotImplementedError(self.engine_type)
