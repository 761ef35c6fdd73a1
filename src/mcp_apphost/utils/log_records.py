"""Turn raw container log lines into records for log consumers."""

import re
from datetime import datetime, timezone

from pydantic import BaseModel, Field

# Prefix added by the runtime when logs are fetched with timestamps enabled,
# e.g. "2026-01-05T10:22:01.123456789Z message"
_TIMESTAMP_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})\s")
_LEVEL_TAG = re.compile(r"\[(ERROR|WARN|WARNING|INFO|DEBUG)\]", re.IGNORECASE)


class LogRecord(BaseModel):
    """A single container log line."""

    timestamp: datetime = Field(..., description="When the line was emitted (or read)")
    message: str = Field(..., description="Line content without the runtime timestamp")
    level: str = Field(default="info", description="error, warn, info or debug")
    raw: str = Field(..., description="Line exactly as returned by the engine")


def parse_log_line(raw: str, now: datetime | None = None) -> LogRecord:
    """
    Parse one raw log line.

    Args:
        raw: Line as yielded by get_logs/stream_logs
        now: Fallback timestamp for lines without a runtime prefix

    Returns:
        LogRecord
    """
    message = raw.rstrip("\r\n")
    timestamp = now or datetime.now(timezone.utc)

    match = _TIMESTAMP_PREFIX.match(message)
    if match:
        seconds, fraction, zone = match.groups()
        # fromisoformat handles at most microseconds
        fraction = (fraction or "")[:7]
        zone = "+00:00" if zone == "Z" else zone
        try:
            timestamp = datetime.fromisoformat(f"{seconds}{fraction}{zone}")
        except ValueError:
            pass
        message = message[match.end():]

    level = "info"
    tag = _LEVEL_TAG.search(message)
    if tag:
        level = tag.group(1).lower()
        if level == "warning":
            level = "warn"
    elif re.search(r"\b(error|exception|failed)\b|\bERR!", message, re.IGNORECASE):
        level = "error"

    return LogRecord(timestamp=timestamp, message=message, level=level, raw=raw)
