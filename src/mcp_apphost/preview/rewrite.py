"""Root-relative asset path rewriting for proxied previews.

Apps are served under ``/preview/<app_id>/``, but dev servers emit asset
references rooted at ``/``. These helpers prefix such references so the
browser requests them back through the proxy.
"""

import re

REWRITABLE_TYPES = ("text/html", "javascript", "ecmascript", "text/css")

# A root-relative reference: "/" not followed by a second "/" (protocol-relative)
# nor by an existing preview prefix.
_ROOT = r"/(?!/|preview/)"

_PATTERNS = (
    re.compile(r"""(\s+src=["'])""" + _ROOT),
    re.compile(r"""(\s+href=["'])""" + _ROOT),
    re.compile(r"""(from\s+["'])""" + _ROOT),
    re.compile(r"""(import\s*\(\s*["'])""" + _ROOT),
    re.compile(r"""(import\s+["'])""" + _ROOT),
    re.compile(r"""(url\(\s*["']?)""" + _ROOT),
)

_HEAD_OPEN = re.compile(r"<head(\s[^>]*)?>", re.IGNORECASE)
_BASE_TAG = re.compile(r"<base[\s>]", re.IGNORECASE)


def preview_prefix(app_id: str) -> str:
    return f"/preview/{app_id}/"


def should_rewrite(content_type: str | None) -> bool:
    """Whether a response of this content type gets its asset paths rewritten."""
    if not content_type:
        return False
    content_type = content_type.lower()
    return any(kind in content_type for kind in REWRITABLE_TYPES)


def rewrite_asset_paths(body: str, app_id: str) -> str:
    """
    Prefix root-relative ``src``/``href``/import/``url()`` references.

    Protocol-relative (``//host``) and already prefixed references are left
    untouched, so rewriting is idempotent.
    """
    prefix = preview_prefix(app_id)
    for pattern in _PATTERNS:
        body = pattern.sub(lambda match: match.group(1) + prefix, body)
    return body


def inject_base_tag(html: str, app_id: str) -> str:
    """Insert ``<base href="/preview/<app_id>/">`` right after ``<head>`` if none exists."""
    if _BASE_TAG.search(html):
        return html
    match = _HEAD_OPEN.search(html)
    if match is None:
        return html
    tag = f'<base href="{preview_prefix(app_id)}">'
    return html[: match.end()] + tag + html[match.end():]


def rewrite_body(body: str, app_id: str, content_type: str | None) -> str:
    """Apply every rewrite that applies to ``content_type``."""
    body = rewrite_asset_paths(body, app_id)
    if content_type and "text/html" in content_type.lower():
        body = inject_base_tag(body, app_id)
    return body
