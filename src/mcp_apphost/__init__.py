"""MCP AppHost: run generated web apps in per-app containers behind a preview proxy."""

__version__ = "0.1.0"
