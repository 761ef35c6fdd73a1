"""Unit tests for log-based readiness detection."""

from mcp_apphost.engines.readiness import LogMarkerReadiness


def test_vite_banner_is_ready():
    matcher = LogMarkerReadiness()
    logs = "\n  VITE v5.2.0  ready in 412 ms\n\n  ➜  Local:   http://localhost:32100/\n"
    assert matcher.is_ready(logs) is True


def test_match_is_case_insensitive():
    assert LogMarkerReadiness().is_ready("DEV SERVER RUNNING at port 3000") is True


def test_install_output_is_not_ready():
    logs = "[INFO] Installing dependencies with pnpm...\nProgress: resolved 120, reused 118\n"
    assert LogMarkerReadiness().is_ready(logs) is False


def test_empty_logs_are_not_ready():
    assert LogMarkerReadiness().is_ready("") is False


def test_custom_markers():
    matcher = LogMarkerReadiness(markers=["Compiled successfully"])
    assert matcher.is_ready("webpack compiled successfully in 2s") is True
    assert matcher.is_ready("  VITE v5 ready in 300 ms") is False
