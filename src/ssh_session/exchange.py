"""Certificate exchange through the handshake artifact written by the remote server.

The remote server is started with ``--json-output-file <path>`` and writes a
small JSON document there describing whether it started and, if so, the
certificate material a client needs. This module copies that document back
with scp (into memory, no local temp file), validates it and turns it into
connection credentials.
"""

import posixpath
import secrets
from collections.abc import Sequence

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .common.exceptions import (
    MalformedArtifactError,
    ProcessError,
    RemoteStartFailedError,
    TransferFailedError,
)
from .common.logging import get_logger
from .common.utils import format_command
from .config import ConnectionConfig
from .process import RemoteProcessRunner, run_command

logger = get_logger(__name__)

ARTIFACT_PREFIX = "ssh-handshake-"


def new_artifact_path(directory: str = "/tmp") -> str:
    """Generate a fresh handshake artifact path.

    Each attempt gets 128 random bits so that concurrent attempts never share
    a file and a retry never reads data left over from an earlier one.

    Args:
        directory: Remote directory the server writes the artifact into

    Returns:
        Absolute remote path for the artifact
    """
    return posixpath.join(directory, f"{ARTIFACT_PREFIX}{secrets.token_hex(16)}")


class HandshakeArtifact(BaseModel):
    """Parsed handshake document."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    success: StrictBool
    ca: StrictStr | None = Field(default=None, repr=False)
    cert: StrictStr | None = Field(default=None, repr=False)
    key: StrictStr | None = Field(default=None, repr=False)

    @model_validator(mode="after")
    def check_credentials(self) -> "HandshakeArtifact":
        """A successful start must carry all three certificate fields."""
        if self.success:
            missing = [
                name for name in ("ca", "cert", "key") if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"missing certificate fields: {', '.join(missing)}")
        return self

    @classmethod
    def parse(cls, content: bytes) -> "HandshakeArtifact":
        """Parse raw artifact bytes.

        Raises:
            MalformedArtifactError: If content is not a JSON object with a
                boolean success flag, or a successful one lacks credentials
        """
        try:
            return cls.model_validate_json(content)
        except ValidationError as e:
            # Error text only names fields and types, never input values
            detail = "; ".join(
                f"{'.'.join(str(loc) for loc in error['loc']) or '<root>'}: {error['msg']}"
                for error in e.errors(include_input=False)
            )
            raise MalformedArtifactError(
                "Handshake artifact is not valid", detail=detail
            ) from e


class ConnectionCredentials(BaseModel):
    """Certificate material needed to talk to the remote server over TLS."""

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    certificate_authority_certificate: str = Field(repr=False)
    client_certificate: str = Field(repr=False)
    client_key: str = Field(repr=False)

    @classmethod
    def from_artifact(cls, artifact: HandshakeArtifact) -> "ConnectionCredentials":
        """Build credentials from a successful artifact.

        Raises:
            RemoteStartFailedError: If the artifact reports a failed start
        """
        if not artifact.success:
            raise RemoteStartFailedError(
                "Failed to start server",
                detail="The remote server reported a failed start in its handshake file",
            )
        return cls(
            certificate_authority_certificate=artifact.ca,
            client_certificate=artifact.cert,
            client_key=artifact.key,
        )


class CertificateExchanger:
    """Retrieves the handshake artifact and extracts connection credentials."""

    def __init__(
        self,
        scp_binary: str = "scp",
        ssh_binary: str = "ssh",
        ssh_options: Sequence[str] = (),
        timeout: int = 60,
        runner: RemoteProcessRunner | None = None,
        remove_artifact: bool = True,
    ):
        """Initialize the exchanger.

        Args:
            scp_binary: scp program to invoke
            ssh_binary: ssh program used to delete the artifact when no runner is given
            ssh_options: Extra Key=Value options passed with -o
            timeout: Seconds to wait for the copy before giving up
            runner: Remote runner used to delete the artifact afterwards
            remove_artifact: Delete the remote artifact once it was copied
        """
        self.scp_binary = scp_binary
        self.ssh_options = tuple(ssh_options)
        self.timeout = timeout
        self.remove_artifact = remove_artifact
        if runner is None and remove_artifact:
            runner = RemoteProcessRunner(
                ssh_binary=ssh_binary, ssh_options=self.ssh_options
            )
        self.runner = runner

    @classmethod
    def from_config(
        cls, config: ConnectionConfig, runner: RemoteProcessRunner | None = None
    ) -> "CertificateExchanger":
        """Create an exchanger using the settings of a connection config."""
        return cls(
            scp_binary=config.scp_binary,
            ssh_binary=config.ssh_binary,
            ssh_options=config.ssh_options,
            timeout=config.timeout,
            runner=runner or RemoteProcessRunner.from_config(config),
            remove_artifact=config.remove_artifact,
        )

    def build_copy_command(self, host: str, artifact_path: str) -> list[str]:
        """Build the scp argument vector that streams the artifact to stdout."""
        argv = [self.scp_binary, "-q"]
        for option in self.ssh_options:
            argv.extend(["-o", option])
        argv.extend([f"{host}:{artifact_path}", "/dev/stdout"])
        return argv

    async def fetch_certificates(
        self, host: str, artifact_path: str
    ) -> ConnectionCredentials:
        """Copy, parse and validate the handshake artifact.

        No retry is attempted; a retry must use a fresh artifact path.

        Args:
            host: Host the remote server runs on
            artifact_path: Remote path passed to the server as --json-output-file

        Returns:
            Credentials taken verbatim from the artifact

        Raises:
            TransferFailedError: If the copy fails
            MalformedArtifactError: If the copied bytes are not a handshake document
            RemoteStartFailedError: If the artifact reports a failed start
        """
        logger.info("Fetching certificates", host=host, artifact_path=artifact_path)
        content = await self._transfer(host, artifact_path)

        try:
            artifact = HandshakeArtifact.parse(content)
            credentials = ConnectionCredentials.from_artifact(artifact)
        finally:
            await self._remove_remote_artifact(host, artifact_path)

        logger.info("Certificates fetched", host=host)
        return credentials

    async def _transfer(self, host: str, artifact_path: str) -> bytes:
        argv = self.build_copy_command(host, artifact_path)
        try:
            result = await run_command(argv, timeout=self.timeout)
        except OSError as e:
            logger.error("Failed to start scp", scp_binary=self.scp_binary, error=str(e))
            raise TransferFailedError(
                f"Failed to run {self.scp_binary}: {e}", detail=str(e)
            ) from e
        except TimeoutError as e:
            logger.error("Certificate transfer timed out", host=host, timeout=self.timeout)
            raise TransferFailedError(
                f"Copying the handshake file timed out after {self.timeout}s",
                detail=format_command(argv),
            ) from e

        if not result.ok:
            logger.error(
                "Certificate transfer failed",
                host=host,
                artifact_path=artifact_path,
                exit_status=result.exit_status,
            )
            raise TransferFailedError(
                f"Copying the handshake file exited with status {result.exit_status}",
                detail=result.stderr,
            )

        logger.debug("Handshake file copied", size=len(result.stdout))
        return result.stdout

    async def _remove_remote_artifact(self, host: str, artifact_path: str) -> None:
        if not self.remove_artifact or self.runner is None:
            return

        try:
            await self.runner.run(host, "rm", ["-f", artifact_path], self.timeout)
        except ProcessError as e:
            logger.warning(
                "Failed to remove remote handshake file",
                host=host,
                artifact_path=artifact_path,
                error=e.message,
            )
