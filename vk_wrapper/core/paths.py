# vk_wrapper/core/paths.py
"""
VK Wrapper – executable path resolution
=======================================

Turns the user-configured (or auto-discovered) node/npx locations into
concrete executable files.

Version managers such as asdf or mise put *shims* on the PATH instead of
the real binaries.  A shim only works when the manager's own environment
is present, which is usually not the case for a GUI-launched process, so
we look through the shim to the newest installed version instead.

Note: this assumes npx lives next to node inside the runtime's version
directory.  That holds for the common managers but it is a best-effort
heuristic; when it does not hold we simply keep the configured path.

Public helpers
--------------
• resolve_shim(configured_path, tool_name) -> str
• detect_shim(configured_path, tool_name) -> ShimChain | None
• get_executable_paths() -> ExecutablePaths
• discover_executable_paths() -> ExecutablePaths
"""

from __future__ import annotations

import functools
import itertools
import logging
import os
import re
import shutil
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from vk_wrapper.core import config, environment
from vk_wrapper.core.errors import PathsNotConfigured
from vk_wrapper.core.models import ExecutablePaths, ExecutableRef, ShimChain, VersionManager

log = logging.getLogger(__name__)

RUNTIME_TOOL = "node"
_VERSION_DIR_RE = re.compile(r"^v?\d+(\.\d+)*([-+.].*)?$")
_LEADING_DIGITS_RE = re.compile(r"^\d+")


# ──────────────────────────────────────────────
# 1. Version managers
# ──────────────────────────────────────────────
def known_version_managers() -> List[VersionManager]:
    """Return the supported version managers (homes honour env overrides)."""
    home = Path.home()
    xdg_data = Path(os.getenv("XDG_DATA_HOME", home / ".local" / "share"))
    return [
        VersionManager(
            name="asdf",
            home=Path(os.getenv("ASDF_DATA_DIR", home / ".asdf")).expanduser(),
            home_env="ASDF_DATA_DIR",
            plugins={RUNTIME_TOOL: "nodejs"},
        ),
        VersionManager(
            name="mise",
            home=Path(os.getenv("MISE_DATA_DIR", xdg_data / "mise")).expanduser(),
            home_env="MISE_DATA_DIR",
            plugins={RUNTIME_TOOL: "node"},
        ),
    ]


def _manager_for(path: Path) -> Optional[VersionManager]:
    for manager in known_version_managers():
        if path.is_relative_to(manager.shims_dir):
            return manager
    return None


# ──────────────────────────────────────────────
# 2. Version ordering
# ──────────────────────────────────────────────
def version_components(name: str) -> List[int]:
    """`v1.10.0-rc1` -> [1, 10, 0]; non-numeric components count as 0."""
    parts = name[1:] if name[:1] in ("v", "V") else name
    out = []
    for part in parts.split("."):
        m = _LEADING_DIGITS_RE.match(part)
        out.append(int(m.group(0)) if m else 0)
    return out


def compare_versions(a: str, b: str) -> int:
    for x, y in itertools.zip_longest(version_components(a), version_components(b), fillvalue=0):
        if x != y:
            return 1 if x > y else -1
    return 0


def sort_versions_desc(names: Sequence[str]) -> List[str]:
    return sorted(names, key=functools.cmp_to_key(compare_versions), reverse=True)


def _list_versions(root: Path) -> List[str]:
    try:
        return [
            entry.name
            for entry in root.iterdir()
            if entry.is_dir() and _VERSION_DIR_RE.match(entry.name)
        ]
    except OSError:
        return []


# ──────────────────────────────────────────────
# 3. Shim resolution
# ──────────────────────────────────────────────
def detect_shim(configured_path: str, tool_name: str = RUNTIME_TOOL) -> Optional[ShimChain]:
    """
    Return the shim chain for `configured_path`, or None when it is not a
    shim or the versioned binary cannot be found.
    """
    if not configured_path:
        return None
    shim = Path(configured_path).expanduser().absolute()
    manager = _manager_for(shim)
    if manager is None:
        return None

    root = manager.installs_root(tool_name)
    versions = _list_versions(root)
    if not versions:
        log.debug("No %s versions installed under %s", tool_name, root)
        return None

    newest = sort_versions_desc(versions)[0]
    candidate = root / newest / "bin" / shim.name
    if not candidate.is_file():
        log.debug("Shim target %s does not exist", candidate)
        return None

    return ShimChain(manager=manager, shim_path=str(shim), target_path=str(candidate))


def resolve_shim(configured_path: str, tool_name: str = RUNTIME_TOOL) -> str:
    """
    Return the real binary behind a version-manager shim, or
    `configured_path` unchanged.  Never raises.
    """
    try:
        chain = detect_shim(configured_path, tool_name)
    except (OSError, ValueError) as exc:
        log.debug("Shim resolution failed for %s: %s", configured_path, exc)
        return configured_path
    if chain is None:
        return configured_path
    log.info("Resolved %s shim %s -> %s", chain.manager.name, chain.shim_path, chain.target_path)
    return chain.target_path


# ──────────────────────────────────────────────
# 4. Configured / discovered paths
# ──────────────────────────────────────────────
def check_executable(tool: str, path: Optional[str]) -> ExecutableRef:
    """Return an ExecutableRef that is only resolved for runnable files."""
    if path and os.path.isfile(path) and os.access(path, os.X_OK):
        return ExecutableRef(tool=tool, path=os.path.abspath(path))
    return ExecutableRef(tool=tool, path=None)


def get_executable_paths() -> ExecutablePaths:
    """
    Read node/npx from the settings file and look through shims.

    Raises PathsNotConfigured if either path is missing.
    """
    configured = config.get_executable_paths()
    if configured is None:
        raise PathsNotConfigured(
            "Node.js paths are not configured.\n\n"
            "Please select your node and npx executables."
        )

    node, npx = configured["nodePath"], configured["npxPath"]
    shim = detect_shim(node) or detect_shim(npx)
    return ExecutablePaths(
        primary=ExecutableRef(tool="runtime", path=resolve_shim(node)),
        secondary=ExecutableRef(tool="package-runner", path=resolve_shim(npx)),
        shim=shim,
    )


def _binary_names(tool: str) -> List[str]:
    if sys.platform == "win32":
        return {"node": ["node.exe"], "npx": ["npx.cmd", "npx.exe"]}[tool]
    return [tool]


def _search_path() -> str:
    dirs: List[str] = []
    for source in (
        environment.shell_environment().get("PATH", ""),
        os.environ.get("PATH", ""),
    ):
        dirs.extend(d for d in source.split(os.pathsep) if d)
    dirs.extend(environment.fallback_search_dirs())
    return os.pathsep.join(dict.fromkeys(dirs))


def _which(tool: str, search_path: str) -> Optional[str]:
    for name in _binary_names(tool):
        found = shutil.which(name, path=search_path)
        if found:
            return found
    return None


def discover_executable_paths() -> ExecutablePaths:
    """Look for node/npx on the login-shell PATH, our own PATH and fallbacks."""
    search_path = _search_path()
    node = _which("node", search_path)
    npx = _which("npx", search_path)
    if node is None or npx is None:
        log.warning("Auto-discovery incomplete (node=%s, npx=%s)", node, npx)

    shim = (node and detect_shim(node)) or (npx and detect_shim(npx)) or None
    return ExecutablePaths(
        primary=check_executable("runtime", node and resolve_shim(node)),
        secondary=check_executable("package-runner", npx and resolve_shim(npx)),
        shim=shim,
    )
