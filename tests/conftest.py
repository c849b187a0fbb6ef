"""Shared fixtures: every test gets its own settings directory."""

import os
import sys
import tempfile

# must be set before vk_wrapper.core.config is imported
os.environ.setdefault("VK_WRAPPER_HOME", tempfile.mkdtemp(prefix="vk-wrapper-tests-"))

import pytest

from vk_wrapper.core import config, environment
from vk_wrapper.core.models import ExecutablePaths, ExecutableRef


@pytest.fixture(autouse=True)
def isolated_config(tmp_path):
    config._reset_for_tests(tmp_path / "home")
    environment._reset_snapshot_for_tests()
    yield
    environment._reset_snapshot_for_tests()


@pytest.fixture
def python_paths():
    """ExecutablePaths that run Python in place of npx."""
    return ExecutablePaths(
        primary=ExecutableRef(tool="runtime", path=sys.executable),
        secondary=ExecutableRef(tool="package-runner", path=sys.executable),
    )


@pytest.fixture
def make_executable(tmp_path):
    def _make(rel_path: str) -> str:
        path = tmp_path / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\nexit 0\n")
        path.chmod(0o755)
        return str(path)

    return _make
