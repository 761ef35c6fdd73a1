"""Allow ``python -m mcp_apphost``."""

from mcp_apphost.server import main

main()
