# vk_wrapper/core/process_tree.py
"""
Terminating a process together with all of its descendants.

`npx` forks the actual server (and the server may fork workers), so
signalling only the direct child leaves orphans behind.  Two
implementations share one interface and are picked by
`default_tree_killer()`:

• PosixTreeKiller   – enumerate descendants with psutil and signal each
• WindowsTreeKiller – let `taskkill /T` walk the tree

Nothing in here raises: every failure is logged and the next step
(ultimately `sweep`) takes over.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from typing import Dict, Iterable, List, Sequence

import psutil

log = logging.getLogger(__name__)

_SWEEP_WAIT = 1.0


def _descendants(pid: int) -> List[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []
    except psutil.Error as exc:
        log.warning(f"Could not list children of PID {pid}: {exc}")
        return []


class ProcessTreeKiller:
    """Base class: graceful `terminate` followed by a forceful `sweep`."""

    def __init__(self, residual_patterns: Sequence[str] = ()) -> None:
        self.residual_patterns = tuple(residual_patterns)

    def terminate(self, pid: int) -> None:
        raise NotImplementedError

    def sweep(self, pid: int) -> None:
        raise NotImplementedError

    #* --- name-pattern sweep ---
    def _residual_processes(self) -> List[psutil.Process]:
        if not self.residual_patterns:
            return []
        own_pid = os.getpid()
        try:
            user = psutil.Process(own_pid).username()
        except psutil.Error:
            user = None

        found = []
        for proc in psutil.process_iter(["pid", "cmdline", "username"]):
            info = proc.info
            if info["pid"] == own_pid:
                continue
            if user is not None and info.get("username") != user:
                continue
            cmdline = " ".join(info.get("cmdline") or [])
            if any(pattern in cmdline for pattern in self.residual_patterns):
                found.append(proc)
        return found

    def sweep_residual(self) -> None:
        """Kill leftover processes whose command line matches a known pattern."""
        try:
            procs = self._residual_processes()
        except psutil.Error as exc:
            log.warning(f"Residual process scan failed: {exc}")
            return
        _kill_all(procs)


def _kill_all(procs: Iterable[psutil.Process]) -> None:
    own_pid = os.getpid()
    alive = []
    for proc in procs:
        try:
            if not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE:
                continue
            log.warning(f"Killing stubborn process {proc.name()} (PID {proc.pid}).")
            # our own children are reaped by whoever spawned them
            is_own_child = proc.ppid() == own_pid
            proc.kill()
            if not is_own_child:
                alive.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as exc:
            log.warning(f"Could not kill PID {proc.pid}: {exc}")
    if alive:
        try:
            psutil.wait_procs(alive, timeout=_SWEEP_WAIT)
        except psutil.Error:
            pass


class PosixTreeKiller(ProcessTreeKiller):
    """SIGTERM / SIGKILL every member of the tree, children first."""

    def __init__(self, residual_patterns: Sequence[str] = ()) -> None:
        super().__init__(residual_patterns)
        # tree members seen at terminate time; descendants are reparented
        # once the root exits and can no longer be found through it
        self._tracked: Dict[int, List[psutil.Process]] = {}

    def _snapshot(self, pid: int) -> List[psutil.Process]:
        try:
            root = psutil.Process(pid)
        except psutil.Error:
            return []
        return [*_descendants(pid), root]

    def terminate(self, pid: int) -> None:
        members = self._snapshot(pid)
        self._tracked[pid] = members

        # children first, root last
        for proc in [*reversed(members[:-1]), *members[-1:]]:
            try:
                log.debug(f"Sending SIGTERM to PID {proc.pid}")
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.Error as exc:
                log.warning(f"Could not terminate PID {proc.pid}: {exc}")

    def sweep(self, pid: int) -> None:
        tracked = self._tracked.pop(pid, None)
        if tracked is None:
            tracked = self._snapshot(pid)

        procs: Dict[int, psutil.Process] = {p.pid: p for p in tracked}
        for proc in tracked:
            # psutil compares create times, so a recycled PID is not followed
            if proc.pid == pid and proc.is_running():
                try:
                    for child in proc.children(recursive=True):
                        procs.setdefault(child.pid, child)
                except psutil.Error:
                    pass
        _kill_all(procs.values())
        self.sweep_residual()


class WindowsTreeKiller(ProcessTreeKiller):
    """Delegate the tree walk to `taskkill /T`."""

    def _taskkill(self, pid: int, force: bool) -> None:
        cmd = ["taskkill", "/PID", str(pid), "/T"]
        if force:
            cmd.append("/F")
        try:
            subprocess.run(
                cmd,
                capture_output=True,
                timeout=10,
                check=False,
                creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
            )
        except (OSError, subprocess.SubprocessError) as exc:
            # process may already be gone
            log.warning(f"taskkill for PID {pid} failed: {exc}")

    def terminate(self, pid: int) -> None:
        self._taskkill(pid, force=False)

    def sweep(self, pid: int) -> None:
        self._taskkill(pid, force=True)
        self.sweep_residual()


def default_tree_killer(residual_patterns: Sequence[str] = ()) -> ProcessTreeKiller:
    """Pick the implementation for the current platform."""
    if sys.platform == "win32":
        return WindowsTreeKiller(residual_patterns)
    return PosixTreeKiller(residual_patterns)
