"""Shared fixtures for the control plane test suite.

Most tests spawn real, short-lived children through the current
interpreter (`sys.executable -c ...`) so no shell utilities beyond
`/bin/sh` are assumed.
"""
import shlex
import sys
import time

import pytest

from controlplane.tools.blacklist import CommandFilter
from controlplane.tools.sessions import SessionRegistry
from controlplane.tools.shell import CommandRunner


@pytest.fixture
def python_cmd():
    """Build a shell command line that runs `code` with this interpreter."""

    def build(code: str) -> str:
        return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"

    return build


@pytest.fixture
def wait_for():
    """Poll `predicate` until it is truthy or `timeout` seconds pass."""

    def wait(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return bool(predicate())

    return wait


@pytest.fixture
def command_filter():
    return CommandFilter()


@pytest.fixture
def sessions():
    registry = SessionRegistry(max_output_lines=50)
    yield registry
    registry.kill_all()


@pytest.fixture
def runner(tmp_path, command_filter, sessions):
    return CommandRunner(command_filter, sessions, root_dir=str(tmp_path), timeout_ms=10_000)
