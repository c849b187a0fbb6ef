# vk_wrapper/core/errors.py
"""
Failures surfaced by the supervisor.  Every error carries a
user-facing `message` and a short `hint` for the error page.
"""

from __future__ import annotations

import enum
from typing import Optional


class LauncherError(Exception):
    hint: str = "Please check that Node.js 18+ is installed and try again."

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint


class PathsNotConfigured(LauncherError):
    hint = "Open the settings and select your node and npx executables."


class SpawnFailure(LauncherError):
    hint = "Make sure the npx path points to an existing, executable file."


class StartupTimeout(LauncherError):
    hint = "Please check your internet connection and try again."


class SupervisorBusy(LauncherError):
    hint = "Wait for the running server to stop before launching again."


class EarlyExitReason(str, enum.Enum):
    port_in_use = "port_in_use"
    tool_not_found = "tool_not_found"
    unknown = "unknown"


class EarlyExit(LauncherError):
    def __init__(
        self,
        message: str,
        reason: EarlyExitReason = EarlyExitReason.unknown,
        exit_code: Optional[int] = None,
        diagnostic: str = "",
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.exit_code = exit_code
        self.diagnostic = diagnostic
