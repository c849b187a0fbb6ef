# vk_wrapper/api/settings.py
"""
VK Wrapper – launcher settings API
==================================

Persists the node/npx executable paths, the last used port and the
environment strategy in `~/.vk-wrapper/config/settings.json` using the
helpers defined in *vk_wrapper/core/config.py*.

Routes
------
GET  /api/settings
    -> returns current settings (merged with defaults).

POST /api/settings
    -> body: SettingsUpdate
    -> validates the executables, saves to disk, returns updated object.

GET  /api/settings/discover
    -> looks for node/npx on the user's PATH (nothing is saved).
"""

from __future__ import annotations

import asyncio
from typing import Dict, Literal, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from vk_wrapper.core import config, paths

router = APIRouter(tags=["settings"])

EnvStrategy = Literal["login-shell", "minimal", "inherit"]


# ──────────────────────────────────────────────
# Data models
# ──────────────────────────────────────────────
class Settings(BaseModel):
    nodePath: Optional[str] = None
    npxPath: Optional[str] = None
    lastPort: Optional[int] = None
    envStrategy: EnvStrategy = Field(default_factory=config.get_env_strategy)


class SettingsUpdate(BaseModel):
    nodePath: Optional[str] = None
    npxPath: Optional[str] = None
    lastPort: Optional[int] = Field(None, ge=config.MIN_USER_PORT, le=config.MAX_USER_PORT)
    envStrategy: Optional[EnvStrategy] = None


class DiscoveredPaths(BaseModel):
    nodePath: Optional[str] = None
    npxPath: Optional[str] = None
    shimManager: Optional[str] = None


# ──────────────────────────────────────────────
# Helper
# ──────────────────────────────────────────────
def _current() -> Settings:
    cfg = config.read_config()
    return Settings(
        nodePath=cfg.get("nodePath"),
        npxPath=cfg.get("npxPath"),
        lastPort=config.get_last_port(),
        envStrategy=config.get_env_strategy(),
    )


def _validate_executable(label: str, value: str) -> str:
    ref = paths.check_executable(label, value.strip())
    if not ref.resolved:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{label} path is not an executable file: {value}",
        )
    return ref.path


# ──────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────
@router.get("/settings", response_model=Settings)
async def get_settings():
    """
    Return the currently effective settings (defaults overwritten by user file).
    """
    return _current()


@router.post("/settings", response_model=Settings)
async def save_settings(body: SettingsUpdate):
    """
    Validate & persist changes.  Returns the merged settings object.
    """
    update: Dict = body.model_dump(exclude_unset=True)
    for key, label in (("nodePath", "node"), ("npxPath", "npx")):
        if update.get(key):
            update[key] = _validate_executable(label, update[key])

    merged = config.read_config()
    if "nodePath" in update or "npxPath" in update:
        config.persist_paths(
            update.pop("nodePath", merged.get("nodePath")),
            update.pop("npxPath", merged.get("npxPath")),
        )
        merged = config.read_config()
    merged.update(update)
    try:
        config.save_config(merged)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to save settings: {exc}",
        ) from exc
    return _current()


@router.get("/settings/discover", response_model=DiscoveredPaths)
async def discover_paths():
    # the first call may spawn the login shell
    found = await asyncio.to_thread(paths.discover_executable_paths)
    return DiscoveredPaths(
        nodePath=found.primary.path,
        npxPath=found.secondary.path,
        shimManager=found.shim.manager.name if found.shim else None,
    )
