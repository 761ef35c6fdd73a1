"""Readiness detection for application dev servers."""

from typing import Iterable, Protocol

# Banner fragments printed by dev servers once they accept connections.
# Tuned to Vite's output; other frameworks may be misclassified.
DEFAULT_READINESS_MARKERS = (
    "local:",
    "ready in",
    "application started",
    "server running",
    "vite",
    "dev server running",
    "localhost:",
    "network:",
)


class ReadinessMatcher(Protocol):
    """Decides from log output whether an application is serving."""

    def is_ready(self, logs: str) -> bool: ...


class LogMarkerReadiness:
    """Case-insensitive substring scan over container logs."""

    def __init__(self, markers: Iterable[str] = DEFAULT_READINESS_MARKERS) -> None:
        self.markers = tuple(marker.lower() for marker in markers)

    def is_ready(self, logs: str) -> bool:
        if not logs:
            return False
        haystack = logs.lower()
        return any(marker in haystack for marker in self.markers)
