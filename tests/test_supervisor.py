"""Tests for vk_wrapper.core.supervisor.

A small Python script stands in for `npx vibe-kanban`: the supervisor
runs `<python> <script>` exactly like it would run `<npx> <package>`.
"""

import asyncio
import os
import sys
import textwrap
import time

import psutil
import pytest

from vk_wrapper.core import environment
from vk_wrapper.core.errors import (
    EarlyExit,
    EarlyExitReason,
    PathsNotConfigured,
    SpawnFailure,
    StartupTimeout,
    SupervisorBusy,
)
from vk_wrapper.core.models import ExecutablePaths, ExecutableRef, ServerState
from vk_wrapper.core.process_tree import PosixTreeKiller
from vk_wrapper.core.supervisor import (
    OutputScanner,
    ProcessSupervisor,
    classify_early_exit,
    normalize_url,
)

READY = """
import os, sys, time
port = os.environ.get("PORT", "3000")
print("Downloading package...", flush=True)
print(f"Listening on http://0.0.0.0:{port}", flush=True)
print("Also reachable at http://127.0.0.1:9999", flush=True)
time.sleep(60)
"""

READY_ON_STDERR = """
import sys, time
sys.stderr.write("server running at http://127.0.0.1:5173/\\n")
sys.stderr.flush()
time.sleep(60)
"""

PORT_IN_USE = """
import sys
sys.stderr.write("Error: Os { code: 98, kind: AddrInUse, message: \\"Address already in use\\" }\\n")
sys.exit(1)
"""

CRASH = """
import sys
sys.stderr.write("something went badly wrong\\n")
sys.exit(3)
"""

SILENT = """
import time
time.sleep(60)
"""

EXIT_AFTER_READY = """
import time
print("ready at http://localhost:3001", flush=True)
time.sleep(0.3)
"""

SLOW_TERM = """
import signal, time
stopping = []
signal.signal(signal.SIGTERM, lambda *_: stopping.append(1))
print("http://localhost:3002", flush=True)
while not stopping:
    time.sleep(0.05)
time.sleep(0.3)
"""

STUBBORN = """
import signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("http://localhost:3003", flush=True)
time.sleep(60)
"""

URL_WITHOUT_NEWLINE = """
import sys, time
sys.stdout.write("open http://localhost:3005")
sys.stdout.flush()
time.sleep(60)
"""

WITH_WORKER = """
import subprocess, sys, time
worker = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
print(f"worker={worker.pid}", flush=True)
print("http://localhost:3004", flush=True)
time.sleep(60)
"""

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


class CountingKiller(PosixTreeKiller):
    def __init__(self):
        super().__init__(residual_patterns=())
        self.terminated = 0
        self.swept = 0

    def terminate(self, pid):
        self.terminated += 1
        super().terminate(pid)

    def sweep(self, pid):
        self.swept += 1
        super().sweep(pid)


class SlowSweepKiller(CountingKiller):
    def sweep(self, pid):
        time.sleep(0.5)
        super().sweep(pid)


@pytest.fixture
def make_supervisor(tmp_path, python_paths):
    def _make(source, **kwargs):
        script = tmp_path / "fake_npx.py"
        script.write_text(textwrap.dedent(source))
        kwargs.setdefault("startup_timeout", 10.0)
        kwargs.setdefault("grace_period", 2.0)
        return ProcessSupervisor(
            CountingKiller(),
            package=str(script),
            resolve_paths=lambda: python_paths,
            build_env=lambda exe, port, shim: environment.build_environment(
                exe, port, shim, strategy="inherit"
            ),
            **kwargs,
        )

    return _make


def run(coro):
    return asyncio.run(coro)


class TestOutputScanner:
    def test_first_url_is_reported(self):
        scanner = OutputScanner("stdout")
        url = scanner.feed(b"Listening on http://0.0.0.0:3000\nhttp://localhost:4000\n")
        assert url == "http://0.0.0.0:3000"

    def test_url_split_across_chunks(self):
        scanner = OutputScanner("stdout")
        assert scanner.feed(b"ready on http://localhost:30") is None
        assert scanner.feed(b"00/ now\n") == "http://localhost:3000"

    def test_url_at_eof_is_reported(self):
        scanner = OutputScanner("stderr")
        assert scanner.feed(b"http://127.0.0.1:8080") is None
        assert scanner.feed(b"", final=True) == "http://127.0.0.1:8080"

    def test_url_at_end_of_output_is_held_until_flush(self):
        scanner = OutputScanner("stdout")
        assert scanner.feed(b"open http://localhost:3005") is None
        assert scanner.holding
        assert scanner.flush() == "http://localhost:3005"
        assert not scanner.holding
        assert scanner.flush() is None

    def test_more_output_clears_held_url(self):
        scanner = OutputScanner("stdout")
        scanner.feed(b"http://localhost:30")
        assert scanner.feed(b"00\n") == "http://localhost:3000"
        assert not scanner.holding

    def test_non_loopback_hosts_are_ignored(self):
        scanner = OutputScanner("stdout")
        assert scanner.feed(b"see https://example.com:443 for docs\n") is None

    def test_capture_is_bounded(self):
        scanner = OutputScanner("stderr")
        for _ in range(100):
            scanner.feed(b"x" * 1000 + b"\n")
        assert len(scanner.text) <= 16 * 1024

    def test_wildcard_normalised_to_localhost(self):
        assert normalize_url("http://0.0.0.0:3000") == "http://localhost:3000"
        assert normalize_url("https://127.0.0.1:8443") == "https://127.0.0.1:8443"


class TestClassifyEarlyExit:
    def test_port_in_use(self):
        error = classify_early_exit(1, "Error: Address already in use")
        assert error.reason is EarlyExitReason.port_in_use
        assert "Port is already in use" in error.message

    def test_tool_not_found(self):
        error = classify_early_exit(127, "sh: vibe-kanban: not found")
        assert error.reason is EarlyExitReason.tool_not_found

    def test_unknown_includes_code_and_tail(self):
        error = classify_early_exit(3, "boom\n")
        assert error.reason is EarlyExitReason.unknown
        assert "exited with code 3" in error.message
        assert "boom" in error.message


class TestStartServer:
    def test_ready_url_is_normalised_and_resolved_once(self, make_supervisor):
        supervisor = make_supervisor(READY)

        async def scenario():
            url = await supervisor.start_server()
            assert supervisor.state is ServerState.ready
            assert supervisor.is_running()
            await asyncio.sleep(0.2)  # let the second URL line arrive
            current = supervisor.get_service_url()
            await supervisor.kill_server()
            return url, current

        url, current = run(scenario())
        assert url == "http://localhost:3000"
        assert current == "http://localhost:3000"

    def test_requested_port_reaches_the_child(self, make_supervisor):
        supervisor = make_supervisor(READY)

        async def scenario():
            try:
                return await supervisor.start_server(port=4567)
            finally:
                await supervisor.kill_server()

        assert run(scenario()) == "http://localhost:4567"

    def test_url_on_stderr_counts(self, make_supervisor):
        supervisor = make_supervisor(READY_ON_STDERR)

        async def scenario():
            try:
                return await supervisor.start_server()
            finally:
                await supervisor.kill_server()

        assert run(scenario()) == "http://127.0.0.1:5173"

    def test_url_without_trailing_newline_is_picked_up(self, make_supervisor):
        supervisor = make_supervisor(URL_WITHOUT_NEWLINE, startup_timeout=5.0)

        async def scenario():
            try:
                return await supervisor.start_server()
            finally:
                await supervisor.kill_server()

        assert run(scenario()) == "http://localhost:3005"

    def test_port_conflict_is_classified(self, make_supervisor):
        supervisor = make_supervisor(PORT_IN_USE)
        with pytest.raises(EarlyExit) as exc_info:
            run(supervisor.start_server())
        assert exc_info.value.reason is EarlyExitReason.port_in_use
        assert "Port is already in use" in exc_info.value.message
        assert supervisor.state is ServerState.idle
        assert not supervisor.is_running()

    def test_generic_early_exit_reports_exit_code(self, make_supervisor):
        supervisor = make_supervisor(CRASH)
        with pytest.raises(EarlyExit) as exc_info:
            run(supervisor.start_server())
        assert exc_info.value.exit_code == 3
        assert "exited with code 3" in exc_info.value.message
        assert "something went badly wrong" in exc_info.value.message

    def test_timeout_tears_down(self, make_supervisor):
        supervisor = make_supervisor(SILENT, startup_timeout=0.5, grace_period=1.0)
        with pytest.raises(StartupTimeout):
            run(supervisor.start_server())
        assert not supervisor.is_running()
        assert supervisor.state is ServerState.idle
        assert supervisor.tree_killer.swept == 1

    def test_spawn_failure(self, make_supervisor):
        missing = ExecutablePaths(
            primary=ExecutableRef(tool="runtime", path="/nonexistent/node"),
            secondary=ExecutableRef(tool="package-runner", path="/nonexistent/npx"),
        )
        supervisor = make_supervisor(SILENT)
        supervisor._resolve_paths = lambda: missing
        with pytest.raises(SpawnFailure):
            run(supervisor.start_server())
        assert supervisor.state is ServerState.idle

    def test_unconfigured_paths(self):
        supervisor = ProcessSupervisor(CountingKiller())
        with pytest.raises(PathsNotConfigured):
            run(supervisor.start_server())
        assert supervisor.state is ServerState.idle
        assert not supervisor.is_running()

    def test_second_start_is_rejected(self, make_supervisor):
        supervisor = make_supervisor(READY)

        async def scenario():
            await supervisor.start_server()
            try:
                with pytest.raises(SupervisorBusy):
                    await supervisor.start_server()
            finally:
                await supervisor.kill_server()

        run(scenario())

    def test_server_dying_after_ready_returns_to_idle(self, make_supervisor):
        supervisor = make_supervisor(EXIT_AFTER_READY)

        async def scenario():
            await supervisor.start_server()
            for _ in range(60):
                if supervisor.state is ServerState.idle:
                    break
                await asyncio.sleep(0.05)
            await supervisor.kill_server()

        run(scenario())
        assert supervisor.state is ServerState.idle
        assert supervisor.get_service_url() is None


class TestKillServer:
    def test_kill_twice_is_harmless(self, make_supervisor):
        supervisor = make_supervisor(READY)

        async def scenario():
            await supervisor.start_server()
            await supervisor.kill_server()
            await supervisor.kill_server()

        run(scenario())
        assert not supervisor.is_running()
        assert supervisor.get_service_url() is None
        assert supervisor.tree_killer.terminated == 1
        assert supervisor.tree_killer.swept == 1

    def test_kill_without_process(self):
        supervisor = ProcessSupervisor(CountingKiller())
        run(supervisor.kill_server())
        assert not supervisor.is_running()
        assert supervisor.tree_killer.terminated == 0

    def test_slow_exit_within_grace_period(self, make_supervisor):
        supervisor = make_supervisor(SLOW_TERM, grace_period=3.0)

        async def scenario():
            await supervisor.start_server()
            started = time.monotonic()
            await supervisor.kill_server()
            return time.monotonic() - started

        elapsed = run(scenario())
        assert elapsed < 3.0
        assert supervisor.state is ServerState.idle
        assert supervisor.tree_killer.swept == 1

    def test_stubborn_server_is_force_killed(self, make_supervisor):
        supervisor = make_supervisor(STUBBORN, grace_period=0.5)

        async def scenario():
            await supervisor.start_server()
            await supervisor.kill_server()

        run(scenario())
        assert not supervisor.is_running()
        assert supervisor.state is ServerState.idle
        assert supervisor.tree_killer.swept == 1

    def test_worker_processes_are_terminated(self, make_supervisor):
        supervisor = make_supervisor(WITH_WORKER)

        async def scenario():
            await supervisor.start_server()
            output = supervisor.captured_output("stdout")
            await supervisor.kill_server()
            return output

        output = run(scenario())
        worker_pid = int(output.split("worker=")[1].split()[0])

        deadline = time.monotonic() + 3
        while time.monotonic() < deadline:
            try:
                if psutil.Process(worker_pid).status() == psutil.STATUS_ZOMBIE:
                    break
            except psutil.NoSuchProcess:
                break
            time.sleep(0.05)
        else:
            pytest.fail(f"worker {worker_pid} survived kill_server")

    def test_concurrent_kills_share_one_teardown(self, make_supervisor):
        supervisor = make_supervisor(READY)

        async def scenario():
            await supervisor.start_server()
            await asyncio.gather(supervisor.kill_server(), supervisor.kill_server())

        run(scenario())
        assert supervisor.tree_killer.terminated == 1
        assert supervisor.tree_killer.swept == 1
        assert not supervisor.is_running()

    def test_kill_during_startup_leaves_supervisor_idle(self, make_supervisor):
        supervisor = make_supervisor(SILENT)
        supervisor.tree_killer = SlowSweepKiller()

        async def scenario():
            starting = asyncio.create_task(supervisor.start_server())
            for _ in range(100):
                if supervisor.is_running():
                    break
                await asyncio.sleep(0.05)
            await asyncio.sleep(0.3)
            stopping = asyncio.create_task(supervisor.kill_server())
            with pytest.raises(EarlyExit):
                await starting
            state_after_failure = supervisor.state
            await stopping
            return state_after_failure

        assert run(scenario()) is ServerState.idle
        assert supervisor.tree_killer.swept == 1
        assert not supervisor.is_running()
