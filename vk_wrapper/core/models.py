# vk_wrapper/core/models.py
"""
VK Wrapper – shared data models
===============================

The path resolver, environment builder, supervisor and UI layer
communicate through **typed** value objects defined here.

Avoid adding business logic – that belongs in the `core/` sub-modules.
"""

from __future__ import annotations

import enum
import os
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────
# 1. Executables
# ──────────────────────────────────────────────
class ExecutableRef(BaseModel):
    """A logical tool name plus the concrete file it resolved to."""
    tool: str                          # "runtime" / "package-runner"
    path: Optional[str] = None         # None -> unresolved

    @property
    def resolved(self) -> bool:
        return bool(self.path) and os.path.isfile(self.path) and os.access(self.path, os.X_OK)


class VersionManager(BaseModel):
    """A version manager that installs shims in place of real binaries."""
    model_config = ConfigDict(frozen=True)

    name: str
    home: Path
    home_env: str                      # e.g. ASDF_DATA_DIR
    plugins: Dict[str, str] = Field(default_factory=dict)   # tool -> plugin dir

    @property
    def shims_dir(self) -> Path:
        return self.home / "shims"

    def installs_root(self, tool_name: str) -> Path:
        return self.home / "installs" / self.plugins.get(tool_name, tool_name)


class ShimChain(BaseModel):
    """A configured shim path and the versioned binary it redirects to."""
    manager: VersionManager
    shim_path: str
    target_path: str


class ExecutablePaths(BaseModel):
    primary: ExecutableRef             # node
    secondary: ExecutableRef           # npx
    shim: Optional[ShimChain] = None


# ──────────────────────────────────────────────
# 2. Supervisor state
# ──────────────────────────────────────────────
class ServerState(str, enum.Enum):
    idle = "idle"
    starting = "starting"
    ready = "ready"
    terminating = "terminating"


class ServerStatus(BaseModel):
    state: ServerState
    running: bool
    url: Optional[str] = None
