# vk_wrapper/api/server.py
"""
VK Wrapper – supervised server API
==================================

Used by the config page when it runs in a plain browser (development
mode); inside the desktop window the page talks to the pywebview bridge
instead.

The WrapperApp instance is created in `vk_wrapper.main` and attached to
`app.state.wrapper`.

Routes
------
GET  /api/server/status   -> ServerStatus
POST /api/server/launch   -> body: LaunchRequest, returns LaunchResponse
POST /api/server/stop     -> stops the server tree
"""

from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from vk_wrapper.core import config
from vk_wrapper.core.models import ServerStatus

router = APIRouter(tags=["server"])


class LaunchRequest(BaseModel):
    port: Optional[int] = Field(None, ge=config.MIN_USER_PORT, le=config.MAX_USER_PORT)


class LaunchResponse(BaseModel):
    ok: bool
    url: Optional[str] = None
    error: Optional[str] = None


def _wrapper(request: Request):
    wrapper = getattr(request.app.state, "wrapper", None)
    if wrapper is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supervisor not initialised",
        )
    return wrapper


@router.get("/server/status", response_model=ServerStatus)
async def server_status(request: Request):
    return _wrapper(request).supervisor.status()


@router.post("/server/launch", response_model=LaunchResponse)
async def launch_server(body: LaunchRequest, request: Request):
    """
    Blocks until the server is ready or startup failed (up to the
    startup timeout).
    """
    wrapper = _wrapper(request)
    return LaunchResponse(**await asyncio.to_thread(wrapper.launch_server, body.port))


@router.post("/server/stop", response_model=ServerStatus)
async def stop_server(request: Request):
    wrapper = _wrapper(request)
    await asyncio.to_thread(wrapper.stop_server)
    return wrapper.supervisor.status()
