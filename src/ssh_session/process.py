"""Running local and remote commands through asyncio subprocesses."""

import asyncio
import contextlib
import shlex
from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict

from .common.exceptions import ProcessError
from .common.logging import get_logger
from .common.utils import format_command
from .config import ConnectionConfig

logger = get_logger(__name__)

# Slack on top of connect time plus remote run time before ssh is killed locally
LOCAL_DEADLINE_MARGIN = 10


def local_deadline(timeout: int) -> int:
    """Seconds to wait locally for a remote command bounded by ``timeout``.

    ssh may spend up to ``timeout`` connecting (ConnectTimeout) and the remote
    program may then run for up to ``timeout`` itself.
    """
    return 2 * timeout + LOCAL_DEADLINE_MARGIN


class CommandResult(BaseModel):
    """Captured outcome of a finished command."""

    model_config = ConfigDict(frozen=True)

    args: tuple[str, ...]
    exit_status: int
    stdout: bytes = b""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """True if the command exited with status 0"""
        return self.exit_status == 0

    @property
    def stdout_text(self) -> str:
        """Standard output decoded for display"""
        return self.stdout.decode("utf-8", errors="replace")


async def run_command(argv: Sequence[str], timeout: float | None = None) -> CommandResult:
    """Run a local command to completion and capture its output.

    The exit status is reported, not judged; callers decide what a failure is.

    Args:
        argv: Program and arguments
        timeout: Seconds to wait before killing the process, None to wait forever

    Returns:
        CommandResult with the exit status and captured output

    Raises:
        OSError: If the program cannot be started
        TimeoutError: If the process did not finish within ``timeout``
    """
    logger.debug("Running command", command=format_command(argv))
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        logger.warning("Command timed out, killing it", pid=process.pid, timeout=timeout)
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise

    exit_status = process.returncode if process.returncode is not None else -1
    logger.debug("Command finished", pid=process.pid, exit_status=exit_status)
    return CommandResult(
        args=tuple(argv),
        exit_status=exit_status,
        stdout=stdout or b"",
        stderr=(stderr or b"").decode("utf-8", errors="replace"),
    )


class RemoteProcessRunner:
    """Runs commands on a remote host over ssh, non-interactively."""

    def __init__(self, ssh_binary: str = "ssh", ssh_options: Sequence[str] = ()):
        """Initialize the runner.

        Args:
            ssh_binary: ssh program to invoke
            ssh_options: Extra Key=Value options passed with -o
        """
        self.ssh_binary = ssh_binary
        self.ssh_options = tuple(ssh_options)

    @classmethod
    def from_config(cls, config: ConnectionConfig) -> "RemoteProcessRunner":
        """Create a runner using the ssh settings of a connection config."""
        return cls(ssh_binary=config.ssh_binary, ssh_options=config.ssh_options)

    def build_command(
        self, host: str, command: str, args: Sequence[str], timeout: int
    ) -> list[str]:
        """Build the ssh argument vector for a remote command.

        ssh joins everything after ``--`` into one remote shell command line,
        so arguments are shell-quoted. The command itself is left unquoted so
        that ``~`` in a script path still expands on the remote side.
        """
        argv = [
            self.ssh_binary,
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={timeout}",
        ]
        for option in self.ssh_options:
            argv.extend(["-o", option])
        argv.extend([host, "--", command])
        argv.extend(shlex.quote(arg) for arg in args)
        return argv

    async def run(
        self, host: str, command: str, args: Sequence[str], timeout: int
    ) -> CommandResult:
        """Run ``command`` with ``args`` on ``host``.

        Args:
            host: Remote host name as understood by ssh
            command: Remote program to run
            args: Arguments for the remote program
            timeout: Upper bound in seconds, passed to ssh as ConnectTimeout.
                The local guard is local_deadline(timeout)

        Returns:
            CommandResult of a successful run

        Raises:
            ProcessError: If ssh cannot run, times out, or the command exits non-zero
        """
        argv = self.build_command(host, command, args, timeout)
        deadline = local_deadline(timeout)
        logger.info("Running remote command", host=host, command=command)

        try:
            result = await run_command(argv, timeout=deadline)
        except OSError as e:
            logger.error("Failed to start ssh", ssh_binary=self.ssh_binary, error=str(e))
            raise ProcessError(
                f"Failed to run {self.ssh_binary}: {e}", detail=str(e)
            ) from e
        except TimeoutError as e:
            logger.error("Remote command timed out", host=host, deadline=deadline)
            raise ProcessError(
                f"Remote command timed out after {deadline}s",
                detail=format_command(argv),
            ) from e

        if not result.ok:
            logger.error(
                "Remote command failed",
                host=host,
                command=command,
                exit_status=result.exit_status,
            )
            raise ProcessError(
                f"Remote command exited with status {result.exit_status}",
                exit_status=result.exit_status,
                stdout=result.stdout_text,
                stderr=result.stderr,
            )

        logger.info("Remote command succeeded", host=host, command=command)
        return result
