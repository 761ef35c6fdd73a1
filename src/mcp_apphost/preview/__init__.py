"""Preview reverse proxy for running applications."""

from mcp_apphost.preview.proxy import PreviewProxy
from mcp_apphost.preview.rewrite import inject_base_tag, rewrite_asset_paths, should_rewrite

__all__ = ["PreviewProxy", "inject_base_tag", "rewrite_asset_paths", "should_rewrite"]
