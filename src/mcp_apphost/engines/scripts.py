"""Startup commands for application containers.

Shared between every engine so a given app boots identically on Docker and
Podman. The package manager is detected from the lock file present in the
application directory.
"""

import os
from typing import Literal, Optional

PackageManager = Literal["pnpm", "npm", "yarn"]

LOCK_FILES = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
)


def detect_package_manager(app_path: str, default: PackageManager = "pnpm") -> PackageManager:
    """
    Detect which package manager an application uses.

    Args:
        app_path: Application directory
        default: Package manager to use when no lock file is present

    Returns:
        "pnpm", "yarn" or "npm"
    """
    for lock_file, manager in LOCK_FILES:
        if os.path.exists(os.path.join(app_path, lock_file)):
            return manager
    return default


def get_install_command(package_manager: PackageManager) -> str:
    """Dependency install command for a package manager."""
    if package_manager == "pnpm":
        return "pnpm install"
    if package_manager == "yarn":
        return "yarn install"
    return "npm install --legacy-peer-deps"


def get_dev_command(package_manager: PackageManager, port: int) -> str:
    """Dev server command bound to all interfaces on ``port``."""
    if package_manager == "pnpm":
        return f"pnpm run dev --host 0.0.0.0 --port {port}"
    if package_manager == "yarn":
        return f"yarn dev --host 0.0.0.0 --port {port}"
    return f"npm run dev -- --host 0.0.0.0 --port {port}"


def build_startup_script(
    app_path: str,
    port: int,
    skip_install: bool = False,
    install_command: Optional[str] = None,
    start_command: Optional[str] = None,
    default_package_manager: PackageManager = "pnpm",
) -> str:
    """
    Build the POSIX sh script a container runs at startup.

    Dependencies are reinstalled only when package.json changed since the last
    install (tracked through an md5 stored in ``.dependency-hash``), unless
    ``skip_install`` is set, in which case installation is never attempted.

    Args:
        app_path: Application directory, used for package manager detection
        port: Port the dev server must listen on
        skip_install: Never install dependencies
        install_command: Override for the detected install command
        start_command: Override for the detected dev server command
        default_package_manager: Fallback when no lock file exists

    Returns:
        Script text, meant to be passed as a single argument to ``sh -c``
    """
    manager = detect_package_manager(app_path, default_package_manager)
    install_cmd = install_command or get_install_command(manager)
    dev_cmd = start_command or get_dev_command(manager, port)

    lines = [
        "set -e",
        "",
        f'echo "[INFO] Container starting for port {port}..."',
        "START_TIME=$(date +%s)",
        "",
    ]

    if skip_install:
        lines.append('echo "[INFO] Dependency installation skipped"')
    else:
        lines.extend(
            [
                "NEEDS_INSTALL=false",
                'if [ ! -d "node_modules" ]; then',
                '    echo "[INFO] No node_modules found, will install dependencies"',
                "    NEEDS_INSTALL=true",
                'elif [ ! -f ".dependency-hash" ]; then',
                '    echo "[INFO] No dependency hash found, will install dependencies"',
                "    NEEDS_INSTALL=true",
                "else",
                "    CURRENT_HASH=$(md5sum package.json 2>/dev/null | cut -d' ' -f1 || echo none)",
                "    STORED_HASH=$(cat .dependency-hash 2>/dev/null || echo none)",
                '    if [ "$CURRENT_HASH" != "$STORED_HASH" ]; then',
                '        echo "[INFO] package.json changed, will reinstall dependencies"',
                "        NEEDS_INSTALL=true",
                "    else",
                '        echo "[INFO] Dependencies up-to-date, skipping install"',
                "    fi",
                "fi",
                "",
                'if [ "$NEEDS_INSTALL" = true ]; then',
                "    INSTALL_START=$(date +%s)",
                f'    echo "[INFO] Installing dependencies with {manager}..."',
                "    corepack enable 2>/dev/null || true",
                "    corepack prepare pnpm@latest --activate 2>/dev/null || true",
                f"    {install_cmd}",
                "    md5sum package.json 2>/dev/null | cut -d' ' -f1 > .dependency-hash || true",
                '    echo "[INFO] Dependencies installed in $(( $(date +%s) - INSTALL_START ))s"',
                "fi",
            ]
        )

    lines.extend(
        [
            "",
            "if [ ! -f package.json ]; then",
            '    echo "[ERROR] No package.json found"',
            "    exit 1",
            "fi",
            "",
            f'echo "[INFO] Boot took $(( $(date +%s) - START_TIME ))s, starting dev server on port {port}..."',
        ]
    )

    if start_command:
        lines.append(f"exec env CHOKIDAR_USEPOLLING=true {dev_cmd}")
    else:
        lines.extend(
            [
                "if grep -q '\"dev\"' package.json; then",
                f"    exec env CHOKIDAR_USEPOLLING=true {dev_cmd}",
                "else",
                "    echo \"[WARN] No 'dev' script found, attempting to start with node\"",
                "    exec node index.js",
                "fi",
            ]
        )

    return "\n".join(lines) + "\n"
