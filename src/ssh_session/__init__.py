"""SSH session setup - start a remote server, fetch its certificates and tunnel to it."""

# High-level API
from .api import connect, managed_connection

# Common utilities
from .common.exceptions import (
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
from .common.logging import get_logger, setup_logging
from .config import ConnectionConfig

# Components
from .exchange import (
    CertificateExchanger,
    ConnectionCredentials,
    HandshakeArtifact,
    new_artifact_path,
)
from .notifications import LoggingNotificationSink, NotificationSink
from .orchestrator import (
    ConnectionOrchestrator,
    ConnectionParams,
    ConnectionResult,
    ConnectionStage,
    RemoteProjectsService,
)
from .process import CommandResult, RemoteProcessRunner, run_command
from .tunnel import Tunnel, TunnelManager

__version__ = "0.1.0"


__all__ = [
    # High-level API
    "connect",
    "managed_connection",
    # Configuration
    "ConnectionConfig",
    # Components
    "RemoteProcessRunner",
    "CommandResult",
    "run_command",
    "CertificateExchanger",
    "HandshakeArtifact",
    "ConnectionCredentials",
    "new_artifact_path",
    "TunnelManager",
    "Tunnel",
    "ConnectionOrchestrator",
    "ConnectionParams",
    "ConnectionResult",
    "ConnectionStage",
    "RemoteProjectsService",
    "NotificationSink",
    "LoggingNotificationSink",
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
]
