"""Resolution of application IDs to their files and commands."""

import os
from typing import Optional, Protocol

from pydantic import BaseModel

from mcp_apphost.utils.exceptions import AppNotFoundError


class AppInfo(BaseModel):
    """What the control plane needs to know to run an app."""

    app_id: str
    path: str
    install_command: Optional[str] = None
    start_command: Optional[str] = None


class AppResolver(Protocol):
    """Looks up application metadata owned by another system."""

    async def resolve(self, app_id: str) -> AppInfo: ...


class DirectoryAppResolver:
    """Maps each app ID to ``<apps_base_dir>/<app_id>``."""

    def __init__(self, apps_base_dir: str) -> None:
        self.apps_base_dir = os.path.abspath(apps_base_dir)

    async def resolve(self, app_id: str) -> AppInfo:
        """
        Resolve an app directory.

        Raises:
            AppNotFoundError: If the directory is missing or the ID points
                outside the base directory
        """
        path = os.path.abspath(os.path.join(self.apps_base_dir, app_id))
        if os.path.dirname(path) != self.apps_base_dir or not os.path.isdir(path):
            raise AppNotFoundError(app_id)
        return AppInfo(app_id=app_id, path=path)
