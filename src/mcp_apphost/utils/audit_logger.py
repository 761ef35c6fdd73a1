"""Structured audit logging for container lifecycle operations."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from mcp_apphost.utils.logging import get_logger


class AuditEventType(str, Enum):
    """Types of audit events."""

    # Container events
    CONTAINER_START = "container_start"
    CONTAINER_START_FAILED = "container_start_failed"
    CONTAINER_STOP = "container_stop"
    CONTAINER_RESTART = "container_restart"
    CONTAINER_REMOVE = "container_remove"
    CONTAINER_RECLAIM = "container_reclaim"
    CONTAINER_CLEANUP = "container_cleanup"
    CONTAINER_REAP = "container_reap"

    # Port events
    PORT_ALLOCATE = "port_allocate"
    PORT_RELEASE = "port_release"

    # System events
    SYSTEM_STARTUP = "system_startup"
    SYSTEM_SHUTDOWN = "system_shutdown"
    SYSTEM_DISCOVERY = "system_discovery"


class AuditLogger:
    """Structured audit logger for tracking lifecycle operations."""

    SENSITIVE_KEYS = frozenset(
        {"password", "token", "secret", "key", "auth", "credentials", "private"}
    )

    def __init__(self):
        """Initialize the audit logger."""
        self._logger = get_logger("audit")
        self._logger.setLevel(logging.INFO)

    def log_event(
        self,
        event_type: AuditEventType,
        app_id: Optional[str] = None,
        engine: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Log an audit event.

        Args:
            event_type: Type of event being logged
            app_id: Application the event concerns, if any
            engine: Engine type that performed the action
            details: Additional event-specific details
        """
        sanitized_details = self._sanitize_details(details or {})

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
        }

        if app_id is not None:
            event["app_id"] = app_id
        if engine:
            event["engine"] = engine
        if sanitized_details:
            event["details"] = sanitized_details

        self._logger.info("audit_event", extra=event)

    def _sanitize_details(self, details: dict[str, Any]) -> dict[str, Any]:
        """
        Sanitize sensitive information from event details.

        Args:
            details: Raw event details

        Returns:
            Sanitized details with sensitive fields redacted
        """
        sanitized = {}
        for key, value in details.items():
            if any(word in key.lower() for word in self.SENSITIVE_KEYS):
                sanitized[key] = "***REDACTED***"
            elif isinstance(value, dict):
                sanitized[key] = self._sanitize_details(value)
            elif isinstance(value, list):
                sanitized[key] = [
                    self._sanitize_details(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                sanitized[key] = value

        return sanitized
