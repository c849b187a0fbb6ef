# vk_wrapper/core/supervisor.py
"""
VK Wrapper – server process supervisor
======================================

Owns the one `npx vibe-kanban` child process from spawn to teardown.

States:  idle -> starting -> ready -> terminating -> idle
         (starting -> idle when startup fails)

Readiness is detected by scanning everything the server writes to
stdout *and* stderr for a loopback URL; the first URL found on either
stream wins and later ones are ignored.

Teardown signals the whole process tree, gives it a grace period to
exit, then sweeps whatever is left.  `kill_server` never raises.

Public API
----------
• await start_server(port=None) -> str
• await kill_server() -> None
• is_running() -> bool
• get_service_url() -> str | None
• status() -> ServerStatus

All coroutines must run on the same event loop (see core.runtime).
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from vk_wrapper.core import config, environment, paths
from vk_wrapper.core.errors import (
    EarlyExit,
    EarlyExitReason,
    SpawnFailure,
    StartupTimeout,
    SupervisorBusy,
)
from vk_wrapper.core.models import ExecutablePaths, ServerState, ServerStatus
from vk_wrapper.core.process_tree import ProcessTreeKiller, default_tree_killer

log = logging.getLogger(__name__)

URL_RE = re.compile(r"https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0):\d+")

_READ_SIZE = 4096
_CAPTURE_LIMIT = 16 * 1024     # rolling diagnostic buffer per stream
_CARRY_LIMIT = 1024            # unterminated tail kept for the next scan
_DIAGNOSTIC_TAIL = 500
_DRAIN_TIMEOUT = 1.0
_IDLE_FLUSH = 0.25             # quiet time before a URL at the end of output counts

_PORT_IN_USE = ("AddrInUse", "Address already in use", "EADDRINUSE")
_NOT_FOUND = ("ENOENT", "not found")


# ──────────────────────────────────────────────
# 1. Output scanning
# ──────────────────────────────────────────────
def normalize_url(url: str) -> str:
    """The wildcard bind address is not browsable; use localhost instead."""
    return url.replace("://0.0.0.0:", "://localhost:")


class OutputScanner:
    """Rolling capture of one pipe plus the readiness URL scan."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._captured = ""
        self._pending = ""
        self._held: Optional[str] = None

    @property
    def text(self) -> str:
        return self._captured

    @property
    def holding(self) -> bool:
        """A URL sits at the very end of the output seen so far."""
        return self._held is not None

    def feed(self, data: bytes, final: bool = False) -> Optional[str]:
        """
        Consume a chunk and return the first complete loopback URL in it.

        A URL touching the end of the buffer may still be missing port
        digits, so it is held back until more data, EOF, or `flush()`
        after the pipe has gone quiet.
        """
        text = self._decoder.decode(data, final=final)
        self._captured = (self._captured + text)[-_CAPTURE_LIMIT:]

        scan = self._pending + text
        found = None
        self._held = None
        for match in URL_RE.finditer(scan):
            if final or match.end() < len(scan):
                found = match.group(0)
                break
            self._held = match.group(0)

        cut = max(scan.rfind("\n"), scan.rfind("\r"))
        self._pending = scan[cut + 1:][-_CARRY_LIMIT:]
        return found

    def flush(self) -> Optional[str]:
        """Release a held URL once no more output followed it."""
        found, self._held = self._held, None
        return found


def classify_early_exit(exit_code: Optional[int], stderr_text: str) -> EarlyExit:
    """Turn an exit before readiness into a user-actionable error."""
    if any(sig in stderr_text for sig in _PORT_IN_USE):
        return EarlyExit(
            "Port is already in use.\n\n"
            "Another instance of vibe-kanban may be running.\n"
            "Please close it and try again.",
            reason=EarlyExitReason.port_in_use,
            exit_code=exit_code,
            diagnostic=stderr_text,
        )
    if any(sig in stderr_text for sig in _NOT_FOUND):
        return EarlyExit(
            "Failed to find vibe-kanban.\n\nPlease ensure you have internet access.",
            reason=EarlyExitReason.tool_not_found,
            exit_code=exit_code,
            diagnostic=stderr_text,
        )

    message = f"Server exited with code {exit_code} before becoming ready"
    tail = stderr_text.strip()[-_DIAGNOSTIC_TAIL:]
    if tail:
        message += f"\n\n{tail}"
    return EarlyExit(message, exit_code=exit_code, diagnostic=stderr_text)


def _spawn_kwargs() -> Dict[str, Any]:
    """Platform-specific options for the child process."""
    # no start_new_session: the child stays in our process group
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {}


# ──────────────────────────────────────────────
# 2. Supervisor
# ──────────────────────────────────────────────
class ProcessSupervisor:
    """Single-child supervisor.  Create one per application."""

    def __init__(
        self,
        tree_killer: Optional[ProcessTreeKiller] = None,
        *,
        package: str = config.TARGET_PACKAGE,
        startup_timeout: float = config.STARTUP_TIMEOUT,
        grace_period: float = config.GRACE_PERIOD,
        resolve_paths: Callable[[], ExecutablePaths] = paths.get_executable_paths,
        build_env: Callable[..., Dict[str, str]] = environment.build_environment,
        name: str = "vibe-kanban",
    ) -> None:
        self.tree_killer = tree_killer or default_tree_killer(config.RESIDUAL_PROCESS_PATTERNS)
        self.package = package
        self.startup_timeout = startup_timeout
        self.grace_period = grace_period
        self.name = name
        self._resolve_paths = resolve_paths
        self._build_env = build_env
        self._proc_log = logging.getLogger(f"proc.{name}")

        self._state = ServerState.idle
        self._process: Optional[asyncio.subprocess.Process] = None
        self._url: Optional[str] = None
        self._ready: Optional[asyncio.Future] = None
        self._scanners: Dict[str, OutputScanner] = {}
        self._tasks: List[asyncio.Task] = []
        self._teardown: Optional[asyncio.Task] = None

    # ---- queries ---------------------------------------------------------
    @property
    def state(self) -> ServerState:
        return self._state

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def get_service_url(self) -> Optional[str]:
        return self._url

    def status(self) -> ServerStatus:
        return ServerStatus(state=self._state, running=self.is_running(), url=self._url)

    def captured_output(self, stream: str = "stderr") -> str:
        scanner = self._scanners.get(stream)
        return scanner.text if scanner else ""

    # ---- start -----------------------------------------------------------
    async def start_server(self, port: Optional[int] = None) -> str:
        """
        Spawn the server and wait until it prints its address.

        Raises PathsNotConfigured, SpawnFailure, StartupTimeout, EarlyExit,
        or SupervisorBusy when called outside the idle state.
        """
        if self._state is not ServerState.idle:
            raise SupervisorBusy(f"The server is already {self._state.value}.")

        exe_paths = self._resolve_paths()
        npx = exe_paths.secondary.path or ""
        env = self._build_env(npx, port, exe_paths.shim)

        self._state = ServerState.starting
        self._ready = asyncio.get_running_loop().create_future()
        log.info(
            "Starting %s via %s %s",
            self.name, npx, f"on port {port}" if port else "(auto port)",
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                npx,
                self.package,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(Path.home()),
                env=env,
                **_spawn_kwargs(),
            )
        except (OSError, ValueError) as exc:
            self._reset()
            log.error("Failed to start %s: %s", self.name, exc)
            raise SpawnFailure(f"Failed to start server: {exc}") from exc

        self._process = proc
        log.info("%s started with PID %s", self.name, proc.pid)
        self._scanners = {"stdout": OutputScanner("stdout"), "stderr": OutputScanner("stderr")}
        self._tasks = [
            asyncio.create_task(self._read(proc.stdout, self._scanners["stdout"], logging.INFO)),
            asyncio.create_task(self._read(proc.stderr, self._scanners["stderr"], logging.WARNING)),
        ]
        exited = asyncio.create_task(proc.wait())

        try:
            done, _ = await asyncio.wait(
                {self._ready, exited},
                timeout=self.startup_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            exited.cancel()
            await self.kill_server()
            raise

        if self._state is ServerState.terminating or self._process is not proc:
            # kill_server() ran while we were still waiting
            exited.cancel()
            if self._teardown is not None:
                await asyncio.shield(self._teardown)
            raise EarlyExit(
                "The server was stopped before it became ready.",
                exit_code=proc.returncode,
            )

        if exited in done:
            await self._drain()
            error = classify_early_exit(proc.returncode, self.captured_output("stderr"))
            log.error("%s exited early: %s", self.name, error.message)
            self._reset()
            raise error

        if self._ready.done():
            self._state = ServerState.ready
            self._tasks.append(asyncio.create_task(self._watch(proc, exited)))
            log.info("Server ready at: %s", self._url)
            return self._url

        exited.cancel()
        log.warning("%s not ready after %.0fs, tearing down", self.name, self.startup_timeout)
        await self.kill_server()
        raise StartupTimeout(
            "Server startup timeout. Please check your internet connection and try again."
        )

    async def _read(self, pipe: asyncio.StreamReader, scanner: OutputScanner, level: int) -> None:
        """Pump one pipe: log it, keep a rolling copy, look for the URL."""
        try:
            while True:
                if scanner.holding:
                    try:
                        data = await asyncio.wait_for(pipe.read(_READ_SIZE), _IDLE_FLUSH)
                    except asyncio.TimeoutError:
                        url = scanner.flush()
                        if url:
                            self._on_url(url)
                        continue
                else:
                    data = await pipe.read(_READ_SIZE)
                if not data:
                    break
                text = data.decode("utf-8", errors="replace").rstrip()
                if text:
                    self._proc_log.log(level, text)
                url = scanner.feed(data)
                if url:
                    self._on_url(url)
            url = scanner.feed(b"", final=True)
            if url:
                self._on_url(url)
        except (OSError, ValueError) as exc:
            self._proc_log.debug(f"Pipe reader for {scanner.name} exited: {exc}")

    def _on_url(self, url: str) -> None:
        # check-and-set on the loop thread: the first stream to get here wins
        if self._ready is None or self._ready.done():
            return
        self._url = normalize_url(url)
        self._ready.set_result(self._url)

    async def _drain(self) -> None:
        readers = [t for t in self._tasks if not t.done()]
        if readers:
            await asyncio.wait(readers, timeout=_DRAIN_TIMEOUT)

    async def _watch(self, proc: asyncio.subprocess.Process, exited: asyncio.Task) -> None:
        """Return to idle if a ready server dies on its own."""
        code = await exited
        if self._process is proc and self._state is ServerState.ready:
            log.warning("%s exited unexpectedly with code %s", self.name, code)
            self._reset()

    # ---- stop ------------------------------------------------------------
    async def kill_server(self) -> None:
        """Terminate the server and all of its descendants.  Never raises."""
        if self._teardown is not None and not self._teardown.done():
            await asyncio.shield(self._teardown)
            return

        proc = self._process
        if proc is None:
            return
        if proc.returncode is not None:
            log.debug("%s already exited with code %s", self.name, proc.returncode)
            self._reset()
            return

        self._teardown = asyncio.create_task(self._terminate_tree(proc))
        await asyncio.shield(self._teardown)

    async def _terminate_tree(self, proc: asyncio.subprocess.Process) -> None:
        pid = proc.pid
        self._state = ServerState.terminating
        try:
            log.info("Sending SIGTERM to server process tree (PID %s)...", pid)
            await self._call_killer(self.tree_killer.terminate, pid)

            exited = asyncio.ensure_future(proc.wait())
            grace = asyncio.ensure_future(asyncio.sleep(self.grace_period))
            done, pending = await asyncio.wait(
                {exited, grace}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            if exited in done:
                log.info("%s exited with code %s", self.name, proc.returncode)
            else:
                log.warning("Force killing server process tree (PID %s)", pid)

            # reap descendants the graceful signal missed
            await self._call_killer(self.tree_killer.sweep, pid)

            if proc.returncode is None:
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.grace_period)
                except asyncio.TimeoutError:
                    log.error("%s (PID %s) survived the final sweep", self.name, pid)
        except Exception:
            log.exception("Error while stopping %s", self.name)
        finally:
            self._reset()
            log.info("Server stopped")

    async def _call_killer(self, fn: Callable[[int], None], pid: int) -> None:
        try:
            await asyncio.to_thread(fn, pid)
        except Exception as exc:
            log.error(f"{getattr(fn, '__name__', fn)} failed for PID {pid}: {exc}")

    def _reset(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks = []
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        self._ready = None
        self._process = None
        self._url = None
        self._state = ServerState.idle
