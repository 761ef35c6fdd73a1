"""Unit tests for the directory app resolver."""

import os

import pytest

from mcp_apphost.managers.app_resolver import DirectoryAppResolver
from mcp_apphost.utils.exceptions import AppNotFoundError


@pytest.mark.asyncio
async def test_resolve_existing_app(tmp_path):
    (tmp_path / "42").mkdir()
    resolver = DirectoryAppResolver(str(tmp_path))

    app = await resolver.resolve("42")

    assert app.app_id == "42"
    assert app.path == os.path.join(str(tmp_path), "42")
    assert app.install_command is None
    assert app.start_command is None


@pytest.mark.asyncio
@pytest.mark.parametrize("app_id", ["missing", "../42", "42/..", "a/b", ""])
async def test_resolve_rejects_unknown_or_escaping_ids(tmp_path, app_id):
    """Test that missing apps and IDs leaving the base directory are not found."""
    (tmp_path / "42").mkdir()
    (tmp_path / "a" / "b").mkdir(parents=True)
    resolver = DirectoryAppResolver(str(tmp_path / "."))

    with pytest.raises(AppNotFoundError):
        await resolver.resolve(app_id)


@pytest.mark.asyncio
async def test_resolve_ignores_plain_files(tmp_path):
    (tmp_path / "7").write_text("not an app")

    with pytest.raises(AppNotFoundError) as exc_info:
        await DirectoryAppResolver(str(tmp_path)).resolve("7")

    assert str(exc_info.value) == "App 7 not found"
