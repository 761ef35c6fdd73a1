"""Configuration module for MCP AppHost."""

from .settings import BUILTIN_ENGINES, Settings, get_settings

__all__ = ["BUILTIN_ENGINES", "Settings", "get_settings"]
