"""Shared pytest fixtures for SSH session tests."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from ssh_session.config import ConnectionConfig

SUCCESS_ARTIFACT = {"success": True, "ca": "CA", "cert": "CERT", "key": "KEY"}


def make_process(returncode=0, stdout=b"", stderr=b"", pid=12345):
    """Create a mock asyncio process that has already finished.

    Returns:
        Mock: Mock process with communicate/wait coroutines
    """
    process = Mock()
    process.pid = pid
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock(return_value=returncode)
    process.terminate = Mock()
    process.kill = Mock()
    process.stderr = Mock()
    process.stderr.readline = AsyncMock(return_value=b"")
    return process


def make_running_process(pid=23456, stderr_lines=()):
    """Create a mock long-running asyncio process, as used for tunnels.

    terminate() and kill() mark the process as exited.

    Returns:
        Mock: Mock process that is still running
    """
    process = make_process(returncode=None, pid=pid)
    process.stderr.readline = AsyncMock(side_effect=[*stderr_lines, b""])

    def _exit(status):
        def _set():
            process.returncode = status

        return _set

    process.terminate.side_effect = _exit(-15)
    process.kill.side_effect = _exit(-9)
    return process


class FakeSubprocesses:
    """Stand-in for asyncio.create_subprocess_exec that routes by command.

    Remote launches, scp copies, remote rm calls and ssh tunnels each get a
    mock process configured from the attributes below.
    """

    def __init__(self):
        self.calls = []
        self.launch_status = 0
        self.launch_stdout = b""
        self.launch_stderr = b""
        self.launch_delay = 0.0
        self.artifact = json.dumps(SUCCESS_ARTIFACT).encode()
        self.scp_status = 0
        self.scp_stderr = b""
        self.tunnel_status = None
        self.tunnel_stderr = ()
        self.tunnels = []
        self._next_pid = 30000

    async def __call__(self, *argv, **kwargs):
        self.calls.append(list(argv))
        self._next_pid += 1

        if "-N" in argv:
            process = make_running_process(
                pid=self._next_pid, stderr_lines=self.tunnel_stderr
            )
            if self.tunnel_status is not None:
                process.returncode = self.tunnel_status
            self.tunnels.append(process)
            return process

        if argv[0] == "scp":
            if self.scp_status == 0:
                return make_process(0, stdout=self.artifact, pid=self._next_pid)
            return make_process(
                self.scp_status, stderr=self.scp_stderr, pid=self._next_pid
            )

        if self.remote_command(argv) == "rm":
            return make_process(0, pid=self._next_pid)

        process = make_process(
            self.launch_status,
            stdout=self.launch_stdout,
            stderr=self.launch_stderr,
            pid=self._next_pid,
        )
        if self.launch_delay:
            output = (self.launch_stdout, self.launch_stderr)

            async def slow_communicate():
                await asyncio.sleep(self.launch_delay)
                return output

            process.communicate = AsyncMock(side_effect=slow_communicate)
        return process

    @staticmethod
    def remote_command(argv):
        if "--" not in argv:
            return None
        return argv[list(argv).index("--") + 1]

    @property
    def launch_calls(self):
        return [
            call
            for call in self.calls
            if call[0] == "ssh"
            and "-N" not in call
            and self.remote_command(call) not in (None, "rm")
        ]

    @property
    def scp_calls(self):
        return [call for call in self.calls if call[0] == "scp"]

    @property
    def rm_calls(self):
        return [call for call in self.calls if self.remote_command(call) == "rm"]

    @property
    def tunnel_calls(self):
        return [call for call in self.calls if "-N" in call]


@pytest.fixture
def fake_subprocess(monkeypatch):
    """Route asyncio.create_subprocess_exec through FakeSubprocesses.

    Returns:
        FakeSubprocesses: The installed fake
    """
    fake = FakeSubprocesses()
    monkeypatch.setattr("asyncio.create_subprocess_exec", fake)
    return fake


@pytest.fixture
def connection_config():
    """Connection config pointing at a test host.

    Returns:
        ConnectionConfig: Config with the default 1234 -> 8888 forward
    """
    return ConnectionConfig(
        hostname="devbox",
        start_server_script="~/bin/start-server",
        local_port=1234,
        remote_port=8888,
    )


@pytest.fixture
def notifier():
    """Mock notification sink.

    Returns:
        Mock: Sink with on_info/on_success/on_error
    """
    return Mock()


@pytest.fixture
def service():
    """Mock consuming service whose find_or_create resolves to a session.

    Returns:
        Mock: Service with an async find_or_create
    """
    mock_service = Mock()
    mock_service.find_or_create = AsyncMock(return_value="session-1")
    return mock_service


@pytest.fixture(autouse=True)
def forget_live_tunnels():
    """Keep mock tunnels out of the interpreter-exit kill hook."""
    from ssh_session.tunnel import _live_tunnels  # noqa: PLC0415

    yield
    _live_tunnels.clear()
