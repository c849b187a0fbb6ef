# vk_wrapper/core/config.py
"""
VK Wrapper – central configuration helper
=========================================

All modules import *only* from this file when they need:
• application constants (name, target package, supervision timeouts)
• resolved user-specific paths (config/, logs/)
• persisted user settings (node/npx paths, last port, env strategy, …)

This file does *not* perform any network or heavy I/O.  Directory
creation happens lazily (at import time) and should complete in
milliseconds.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)

# ──────────────────────────────────────────────
# 1. Application constants
# ──────────────────────────────────────────────
APP_NAME: str = "VK Wrapper"
APP_ID: str = "vk-wrapper"
WRAPPER_VERSION: str = "0.2.0"

# the supervised tool
TARGET_PACKAGE: str = "vibe-kanban@latest"
RESIDUAL_PROCESS_PATTERNS = ("vibe-kanban",)

# supervision timings (seconds)
STARTUP_TIMEOUT: float = 60.0          # first run may need to download the package
GRACE_PERIOD: float = 3.0
SHELL_ENV_TIMEOUT: float = 5.0

# local UI server (config form)
UI_HOST: str = "127.0.0.1"
UI_PORT: int = 5151

# user port range accepted by the launch form
MIN_USER_PORT: int = 1024
MAX_USER_PORT: int = 65535

CONFIG_FILE_NAME = "settings.json"
LOG_FILE_NAME = "wrapper.log"


# ──────────────────────────────────────────────
# 2. Directory resolution helpers
# ──────────────────────────────────────────────
def _home_base() -> Path:
    """Return the root folder for all user data (`~/.vk-wrapper/` on Unix,
    `%LOCALAPPDATA%\\VKWrapper\\` on Windows). Can be overridden with
    the env variable `VK_WRAPPER_HOME`."""
    if env := os.getenv("VK_WRAPPER_HOME"):
        return Path(env).expanduser().resolve()

    if platform.system() == "Windows":
        root = Path(os.getenv("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
        return (root / "VKWrapper").resolve()

    return (Path.home() / ".vk-wrapper").resolve()


BASE_DIR: Path = _home_base()
LOG_DIR: Path = BASE_DIR / "logs"
CONFIG_DIR: Path = BASE_DIR / "config"

_ALL_DIRS = (LOG_DIR, CONFIG_DIR)


# ──────────────────────────────────────────────
# 3. Bootstrap – ensure folders exist
# ──────────────────────────────────────────────
def ensure_dirs() -> None:
    """Create any missing directories (no error if they exist)."""
    for d in _ALL_DIRS:
        d.mkdir(parents=True, exist_ok=True)


ensure_dirs()  # create on first import


# ──────────────────────────────────────────────
# 4. User settings (read / write)
# ──────────────────────────────────────────────
_CONFIG_PATH: Path = CONFIG_DIR / CONFIG_FILE_NAME
_DEFAULT_SETTINGS: Dict[str, Any] = {
    "nodePath": None,
    "npxPath": None,
    "lastPort": None,
    "envStrategy": None,           # None -> platform default
    "window": {"width": 1400, "height": 900},
}


def _load_raw() -> Dict[str, Any]:
    if _CONFIG_PATH.exists():
        try:
            with _CONFIG_PATH.open(encoding="utf-8") as fh:
                return json.load(fh)
        except (json.JSONDecodeError, OSError) as exc:
            log.warning("Failed to load config %s: %s", _CONFIG_PATH, exc)
            # Backup the corrupted file before resetting
            backup = _CONFIG_PATH.with_suffix(".bak")
            shutil.copy2(_CONFIG_PATH, backup)
    return {}


def read_config() -> Dict[str, Any]:
    """Return merged settings (defaults overridden by user values)."""
    cfg = _DEFAULT_SETTINGS.copy()
    cfg.update(_load_raw())
    return cfg


def save_config(new_cfg: Dict[str, Any]) -> None:
    """Persist updated user settings atomically."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    tmp = _CONFIG_PATH.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(new_cfg, fh, indent=2)
    tmp.replace(_CONFIG_PATH)


def _update(**values: Any) -> None:
    cfg = read_config()
    cfg.update(values)
    try:
        save_config(cfg)
    except OSError as exc:
        log.error("Failed to save config %s: %s", _CONFIG_PATH, exc)


# ──────────────────────────────────────────────
# 5. Helper utilities (public API)
# ──────────────────────────────────────────────
def get_executable_paths() -> Optional[Dict[str, str]]:
    """
    Return the configured `{"nodePath", "npxPath"}` pair, or None when
    either of them is missing.
    """
    cfg = read_config()
    node, npx = cfg.get("nodePath"), cfg.get("npxPath")
    if not node or not npx or not str(node).strip() or not str(npx).strip():
        return None
    return {"nodePath": str(node).strip(), "npxPath": str(npx).strip()}


def persist_paths(node_path: Optional[str], npx_path: Optional[str]) -> None:
    _update(nodePath=node_path, npxPath=npx_path)


def get_last_port() -> Optional[int]:
    port = read_config().get("lastPort")
    try:
        return int(port) if port is not None else None
    except (TypeError, ValueError):
        return None


def set_last_port(port: int) -> None:
    _update(lastPort=int(port))


def get_env_strategy() -> str:
    """`login-shell`, `minimal` or `inherit` (platform default if unset)."""
    strategy = read_config().get("envStrategy")
    if strategy in ("login-shell", "minimal", "inherit"):
        return strategy
    return "inherit" if platform.system() == "Windows" else "login-shell"


def log_file_path() -> Path:
    return LOG_DIR / LOG_FILE_NAME


# ──────────────────────────────────────────────
# Unit-test helpers
# ──────────────────────────────────────────────
def _reset_for_tests(tmp_path: Path) -> None:  # pragma: no cover
    """Internal helper: redirect BASE_DIR during pytest."""
    global BASE_DIR, LOG_DIR, CONFIG_DIR, _CONFIG_PATH, _ALL_DIRS
    BASE_DIR = tmp_path
    LOG_DIR = BASE_DIR / "logs"
    CONFIG_DIR = BASE_DIR / "config"
    _ALL_DIRS = (LOG_DIR, CONFIG_DIR)
    _CONFIG_PATH = CONFIG_DIR / CONFIG_FILE_NAME
    ensure_dirs()
