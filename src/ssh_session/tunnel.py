"""Local port forwarding through long-lived ``ssh -N -L`` processes."""

import asyncio
import atexit
import collections
import contextlib
import os
import signal
import weakref
from collections.abc import Sequence

from .common.exceptions import TunnelError
from .common.logging import get_logger
from .common.utils import format_command, validate_port
from .config import ConnectionConfig

logger = get_logger(__name__)

# Tunnels that were opened and not yet closed, killed at interpreter exit
_live_tunnels: "weakref.WeakSet[Tunnel]" = weakref.WeakSet()

STDERR_TAIL_LINES = 50


def _kill_live_tunnels() -> None:
    for tunnel in list(_live_tunnels):
        tunnel.kill()


atexit.register(_kill_live_tunnels)


class Tunnel:
    """Handle for one running forwarding process.

    ``close()`` may be called any number of times; only the first call acts.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        local_port: int,
        host: str,
        remote_port: int,
    ):
        self.local_port = local_port
        self.host = host
        self.remote_port = remote_port
        self._process = process
        self._pid = process.pid
        self._closed = False
        self._stderr_tail: collections.deque[str] = collections.deque(
            maxlen=STDERR_TAIL_LINES
        )
        self._reader: asyncio.Task[None] | None = None
        _live_tunnels.add(self)

    def __repr__(self) -> str:
        return (
            f"Tunnel(localhost:{self.local_port} -> {self.host}:{self.remote_port}, "
            f"pid={self._pid}, closed={self._closed})"
        )

    @property
    def pid(self) -> int | None:
        """Process ID of the forwarding process if it is running"""
        if self.is_running:
            return self._pid
        return None

    @property
    def closed(self) -> bool:
        """True once close() or kill() was called"""
        return self._closed

    @property
    def is_running(self) -> bool:
        """Check if the forwarding process is alive and not closed"""
        return not self._closed and self._process.returncode is None

    @property
    def exit_status(self) -> int | None:
        """Exit status of the forwarding process, None while it runs"""
        return self._process.returncode

    @property
    def stderr_output(self) -> str:
        """Most recent lines ssh wrote to stderr"""
        return "\n".join(self._stderr_tail)

    def start_reader(self) -> None:
        """Start draining stderr so a chatty ssh never blocks on a full pipe."""
        if self._reader is None and self._process.stderr is not None:
            self._reader = asyncio.create_task(self._read_stderr())

    async def _read_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            self._stderr_tail.append(text)
            logger.debug("ssh tunnel output", pid=self._pid, line=text)

    async def wait_reader(self) -> None:
        """Wait until everything ssh wrote to stderr has been collected."""
        if self._reader is not None:
            await self._reader

    async def close(self, timeout: float = 5.0) -> None:
        """Terminate the forwarding process and wait for it.

        Never raises; a process that already exited counts as closed.

        Args:
            timeout: Seconds to wait after SIGTERM before killing
        """
        if self._closed:
            logger.debug("Tunnel already closed", local_port=self.local_port)
            return

        self._closed = True
        _live_tunnels.discard(self)

        try:
            if self._process.returncode is None:
                logger.info("Closing tunnel", pid=self._pid, local_port=self.local_port)
                self._process.terminate()
                try:
                    await asyncio.wait_for(self._process.wait(), timeout=timeout)
                except TimeoutError:
                    logger.warning(
                        "Tunnel did not terminate gracefully, force killing",
                        pid=self._pid,
                    )
                    self._process.kill()
                    await self._process.wait()
            else:
                logger.debug(
                    "Tunnel process already exited",
                    pid=self._pid,
                    exit_status=self._process.returncode,
                )
        except ProcessLookupError:
            logger.debug("Tunnel process already gone", pid=self._pid)
        except Exception as e:
            logger.error("Error closing tunnel", pid=self._pid, error=str(e))
        finally:
            if self._reader is not None and not self._reader.done():
                self._reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._reader

        logger.info("Tunnel closed", local_port=self.local_port)

    def kill(self) -> None:
        """Synchronously signal the forwarding process, for use at exit."""
        if self._closed:
            return

        self._closed = True
        _live_tunnels.discard(self)
        if self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.kill(self._pid, signal.SIGTERM)


class TunnelManager:
    """Opens and owns ssh local port forwards."""

    def __init__(
        self,
        ssh_binary: str = "ssh",
        ssh_options: Sequence[str] = (),
        startup_grace: float = 0.5,
        close_timeout: float = 5.0,
    ):
        """Initialize the manager.

        Args:
            ssh_binary: ssh program to invoke
            ssh_options: Extra Key=Value options passed with -o
            startup_grace: Seconds to watch a new tunnel for an early exit
            close_timeout: Seconds to wait for a tunnel to exit on close
        """
        self.ssh_binary = ssh_binary
        self.ssh_options = tuple(ssh_options)
        self.startup_grace = startup_grace
        self.close_timeout = close_timeout
        self._tunnels: list[Tunnel] = []

    @classmethod
    def from_config(cls, config: ConnectionConfig, **kwargs: float) -> "TunnelManager":
        """Create a manager using the ssh settings of a connection config."""
        return cls(ssh_binary=config.ssh_binary, ssh_options=config.ssh_options, **kwargs)

    @property
    def tunnels(self) -> list[Tunnel]:
        """Tunnels opened by this manager that are still open"""
        return [tunnel for tunnel in self._tunnels if not tunnel.closed]

    def build_command(self, local_port: int, host: str, remote_port: int) -> list[str]:
        """Build the ssh argument vector for a pure port forward."""
        argv = [
            self.ssh_binary,
            "-N",
            "-o",
            "ExitOnForwardFailure=yes",
            "-o",
            "BatchMode=yes",
        ]
        for option in self.ssh_options:
            argv.extend(["-o", option])
        argv.extend(["-L", f"{local_port}:{host}:{remote_port}", host])
        return argv

    async def open(self, local_port: int, host: str, remote_port: int) -> Tunnel:
        """Forward ``localhost:local_port`` to ``host:remote_port``.

        Reachability of the remote port is not checked here.

        Args:
            local_port: Local port to listen on
            host: Remote host to connect through
            remote_port: Port on the remote host to forward to

        Returns:
            Running Tunnel

        Raises:
            ValueError: If a port is out of range
            TunnelError: If the forwarding process cannot start or exits at once
        """
        validate_port(local_port, "Local port")
        validate_port(remote_port, "Remote port")

        argv = self.build_command(local_port, host, remote_port)
        logger.info("Opening tunnel", command=format_command(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Failed to start tunnel process", error=str(e))
            raise TunnelError(f"Failed to start SSH tunnel: {e}", detail=str(e)) from e

        tunnel = Tunnel(process, local_port, host, remote_port)
        tunnel.start_reader()

        if self.startup_grace > 0:
            await asyncio.sleep(self.startup_grace)

        if tunnel.exit_status is not None:
            await tunnel.wait_reader()
            await tunnel.close()
            logger.error(
                "Tunnel process exited during startup",
                exit_status=tunnel.exit_status,
                local_port=local_port,
            )
            raise TunnelError(
                f"SSH tunnel exited with status {tunnel.exit_status}",
                detail=tunnel.stderr_output,
            )

        self._tunnels.append(tunnel)
        logger.info("Tunnel opened", pid=tunnel.pid, local_port=local_port)
        return tunnel

    async def close(self, tunnel: Tunnel | None) -> None:
        """Close a tunnel; closing None or a closed tunnel does nothing."""
        if tunnel is None:
            return
        await tunnel.close(timeout=self.close_timeout)
        if tunnel in self._tunnels:
            self._tunnels.remove(tunnel)

    async def close_all(self) -> None:
        """Close every tunnel this manager opened."""
        for tunnel in reversed(list(self._tunnels)):
            await self.close(tunnel)
