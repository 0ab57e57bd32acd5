"""Custom exceptions for SSH session setup."""

from enum import Enum


class SSHSessionError(Exception):
    """Base exception for all SSH session errors.

    Attributes:
        detail: Diagnostic text (usually process output) for display only
    """

    def __init__(self, message: str, detail: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ProcessError(SSHSessionError):
    """Raised when a remote command fails or ssh itself cannot connect."""

    def __init__(
        self,
        message: str,
        exit_status: int | None = None,
        stdout: str = "",
        stderr: str = "",
        detail: str | None = None,
    ) -> None:
        if detail is None:
            detail = f"stdout: {stdout}\nstderr: {stderr}"
        super().__init__(message, detail)
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class ExchangeErrorKind(str, Enum):
    """Failure kinds of the certificate exchange."""

    TRANSFER_FAILED = "transfer_failed"
    MALFORMED_ARTIFACT = "malformed_artifact"
    REMOTE_START_FAILED = "remote_start_failed"


class ExchangeError(SSHSessionError):
    """Raised when the handshake artifact cannot be turned into credentials."""

    kind: ExchangeErrorKind


class TransferFailedError(ExchangeError):
    """Raised when copying the handshake artifact fails."""

    kind = ExchangeErrorKind.TRANSFER_FAILED


class MalformedArtifactError(ExchangeError):
    """Raised when the retrieved artifact is not a valid handshake document."""

    kind = ExchangeErrorKind.MALFORMED_ARTIFACT


class RemoteStartFailedError(ExchangeError):
    """Raised when the artifact reports that the remote server did not start."""

    kind = ExchangeErrorKind.REMOTE_START_FAILED


class TunnelError(SSHSessionError):
    """Raised when the local forwarding process fails to start."""

    pass


class RegistrationError(SSHSessionError):
    """Raised when the consuming service rejects the connection."""

    pass
