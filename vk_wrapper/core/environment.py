# vk_wrapper/core/environment.py
"""
VK Wrapper – execution environment for the supervised server
============================================================

A process started from the Dock, Start menu or a desktop file does not
inherit the environment of the user's interactive shell: PATH is short,
version managers are not initialised, and `npx` ends up not finding
`node`.  Three strategies are available:

• login-shell – run the user's shell once as an interactive login shell,
                dump its environment and reuse it for the rest of the run
• minimal     – build a small explicit environment by hand
• inherit     – use our own environment as-is

Whatever the strategy, the executable's directory goes first on PATH,
the tool's browser auto-open is disabled and an explicit port is passed
through `PORT`.
"""

from __future__ import annotations

import getpass
import logging
import os
import re
import subprocess
import sys
import tempfile
import threading
import types
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from vk_wrapper.core import config
from vk_wrapper.core.models import ShimChain

log = logging.getLogger(__name__)

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_snapshot: Optional[Mapping[str, str]] = None
_snapshot_lock = threading.Lock()


# ──────────────────────────────────────────────
# 1. Login-shell snapshot
# ──────────────────────────────────────────────
def _default_shell() -> str:
    if shell := os.environ.get("SHELL", "").strip():
        return shell
    return "/bin/zsh" if sys.platform == "darwin" else "/bin/bash"


def parse_env_output(text: str) -> Dict[str, str]:
    """Parse `env` output; lines that are not `KEY=VALUE` are skipped."""
    env: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if not sep or not _ENV_KEY_RE.match(key):
            continue
        env[key] = value
    return env


def capture_login_shell_env(
    shell: Optional[str] = None,
    timeout: float = config.SHELL_ENV_TIMEOUT,
) -> Optional[Dict[str, str]]:
    """
    Return the environment of an interactive login shell, or None if the
    shell cannot be spawned, fails or takes longer than `timeout`.
    """
    shell = shell or _default_shell()
    env = dict(os.environ)
    # keep oh-my-zsh & co. from prompting for updates
    env["DISABLE_AUTO_UPDATE"] = "true"
    try:
        result = subprocess.run(
            [shell, "-ilc", "env"],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout,
            env=env,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        log.warning("Could not read login shell environment from %s: %s", shell, exc)
        return None

    if result.returncode != 0:
        log.warning("Login shell %s exited with code %s", shell, result.returncode)
        return None

    parsed = parse_env_output(result.stdout.decode("utf-8", errors="replace"))
    if "PATH" not in parsed:
        log.warning("Login shell %s did not report a PATH", shell)
        return None
    return parsed


def shell_environment() -> Mapping[str, str]:
    """
    Return the cached login-shell environment, capturing it on first use.
    Falls back to our own environment; the result never changes afterwards.
    """
    global _snapshot
    with _snapshot_lock:
        if _snapshot is None:
            captured = None
            if sys.platform != "win32":
                captured = capture_login_shell_env()
            if captured is None:
                log.info("Using the launcher's own environment")
                captured = dict(os.environ)
            else:
                log.info("Captured login shell environment (%d variables)", len(captured))
            _snapshot = types.MappingProxyType(captured)
        return _snapshot


def _reset_snapshot_for_tests() -> None:  # pragma: no cover
    global _snapshot
    with _snapshot_lock:
        _snapshot = None


# ──────────────────────────────────────────────
# 2. Minimal explicit environment
# ──────────────────────────────────────────────
def fallback_search_dirs() -> List[str]:
    """Directories where node is commonly installed, per OS."""
    if sys.platform == "win32":
        system_root = os.environ.get("SystemRoot", r"C:\Windows")
        dirs = [
            os.path.join(system_root, "System32"),
            system_root,
            os.path.join(os.environ.get("ProgramFiles", r"C:\Program Files"), "nodejs"),
        ]
        if appdata := os.environ.get("APPDATA"):
            dirs.append(os.path.join(appdata, "npm"))
        return dirs
    return ["/opt/homebrew/bin", "/usr/local/bin", "/usr/bin", "/bin", "/usr/sbin", "/sbin"]


def _username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get("USER") or os.environ.get("USERNAME") or ""


def minimal_environment(executable_dir: str) -> Dict[str, str]:
    """Build an environment from scratch for `executable_dir`."""
    home = str(Path.home())
    user = _username()
    tmp = tempfile.gettempdir()
    path = [executable_dir, *fallback_search_dirs()]

    env: Dict[str, str] = {
        "PATH": os.pathsep.join(dict.fromkeys(d for d in path if d)),
        "HOME": home,
    }
    if sys.platform == "win32":
        env.update(
            USERPROFILE=home,
            USERNAME=user,
            TEMP=tmp,
            TMP=tmp,
            SystemRoot=os.environ.get("SystemRoot", r"C:\Windows"),
            npm_config_cache=os.path.join(os.environ.get("LOCALAPPDATA", home), "npm-cache"),
        )
        if appdata := os.environ.get("APPDATA"):
            env["APPDATA"] = appdata
        if local := os.environ.get("LOCALAPPDATA"):
            env["LOCALAPPDATA"] = local
    else:
        cache = os.environ.get("XDG_CACHE_HOME") or os.path.join(home, ".cache")
        env.update(
            USER=user,
            LOGNAME=user,
            SHELL=_default_shell(),
            TMPDIR=tmp,
            XDG_CACHE_HOME=cache,
            npm_config_cache=os.path.join(home, ".npm"),
            LANG=os.environ.get("LANG", "en_US.UTF-8"),
        )
    return env


# ──────────────────────────────────────────────
# 3. Public entry
# ──────────────────────────────────────────────
def _prepend_path(env: Dict[str, str], directory: str) -> None:
    parts = [p for p in env.get("PATH", "").split(os.pathsep) if p and p != directory]
    env["PATH"] = os.pathsep.join([directory, *parts])


def build_environment(
    executable: str,
    port: Optional[int] = None,
    shim: Optional[ShimChain] = None,
    strategy: Optional[str] = None,
) -> Dict[str, str]:
    """
    Return the environment for spawning `executable`.
    """
    strategy = strategy or config.get_env_strategy()
    exe_dir = os.path.dirname(os.path.abspath(executable))

    if strategy == "minimal":
        env = minimal_environment(exe_dir)
    elif strategy == "login-shell":
        env = dict(shell_environment())
    else:
        env = dict(os.environ)

    if shim is not None:
        env[shim.manager.home_env] = str(shim.manager.home)
        _prepend_path(env, str(shim.manager.shims_dir))
    _prepend_path(env, exe_dir)

    # the wrapper window shows the UI; the tool must not open a browser
    env["BROWSER"] = "none"
    if port is not None:
        env["PORT"] = str(port)
    else:
        env.pop("PORT", None)
    return env
