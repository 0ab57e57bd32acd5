"""Common utilities and shared functionality."""

from .exceptions import (
    ExchangeError,
    ExchangeErrorKind,
    MalformedArtifactError,
    ProcessError,
    RegistrationError,
    RemoteStartFailedError,
    SSHSessionError,
    TransferFailedError,
    TunnelError,
)
from .logging import get_logger, setup_logging
from .utils import (
    MAX_PORT,
    MIN_PORT,
    format_command,
    is_sensitive_field,
    sanitize_log_data,
    validate_non_empty_string,
    validate_port,
)

__all__ = [
    # Exceptions
    "SSHSessionError",
    "ProcessError",
    "ExchangeError",
    "ExchangeErrorKind",
    "TransferFailedError",
    "MalformedArtifactError",
    "RemoteStartFailedError",
    "TunnelError",
    "RegistrationError",
    # Logging
    "get_logger",
    "setup_logging",
    # Utils
    "validate_port",
    "validate_non_empty_string",
    "is_sensitive_field",
    "sanitize_log_data",
    "format_command",
    "MIN_PORT",
    "MAX_PORT",
]
