"""Connection orchestration: remote start, certificate exchange, tunnel, registration.

A connection attempt is a strictly sequential pipeline::

    idle -> starting_remote -> exchanging_certificates -> opening_tunnel
         -> registering -> succeeded

Any stage can end the attempt in ``failed``; the result names the stage that
failed. A tunnel opened before a later failure is closed before the result is
returned, so the consuming service never sees a half-built connection.
"""

import inspect
from enum import Enum
from types import TracebackType
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .common.exceptions import RegistrationError, SSHSessionError
from .common.logging import get_logger
from .common.utils import sanitize_log_data
from .config import ConnectionConfig
from .exchange import CertificateExchanger, ConnectionCredentials, new_artifact_path
from .notifications import LoggingNotificationSink, NotificationSink
from .process import RemoteProcessRunner
from .tunnel import Tunnel, TunnelManager

logger = get_logger(__name__)

# The service connects through the tunnel, so the server is always local to it
TUNNEL_HOST = "localhost"


class ConnectionStage(str, Enum):
    """Connection attempt state enumeration."""

    IDLE = "idle"
    STARTING_REMOTE = "starting_remote"
    EXCHANGING_CERTIFICATES = "exchanging_certificates"
    OPENING_TUNNEL = "opening_tunnel"
    REGISTERING = "registering"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


FAILURE_MESSAGES = {
    ConnectionStage.STARTING_REMOTE: "Error establishing SSH connection",
    ConnectionStage.EXCHANGING_CERTIFICATES: "Error fetching certificates!",
    ConnectionStage.OPENING_TUNNEL: "Failed to open SSH tunnel!",
    ConnectionStage.REGISTERING: "Failed to establish connection!",
}


class ConnectionParams(BaseModel):
    """Parameters handed to the consuming service's find_or_create."""

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    host: str
    port: int = Field(ge=1, le=65535)
    cwd: str
    display_title: str
    certificate_authority_certificate: str | None = Field(default=None, repr=False)
    client_certificate: str | None = Field(default=None, repr=False)
    client_key: str | None = Field(default=None, repr=False)

    @classmethod
    def build(
        cls, config: ConnectionConfig, credentials: ConnectionCredentials | None
    ) -> "ConnectionParams":
        """Combine the tunnel endpoint with credentials, if any."""
        values: dict[str, Any] = {
            "host": TUNNEL_HOST,
            "port": config.local_port,
            "cwd": config.cwd,
            "display_title": config.display_title,
        }
        if credentials is not None:
            values.update(credentials.model_dump())
        return cls(**values)

    def to_log_dict(self) -> dict[str, Any]:
        """Parameters with certificate and key material redacted."""
        return sanitize_log_data(self.model_dump(exclude_none=True))


class RemoteProjectsService(Protocol):
    """Consuming service that turns connection parameters into a session."""

    def find_or_create(self, params: ConnectionParams) -> Any: ...


class ConnectionResult(BaseModel):
    """Outcome of one connection attempt."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    stage: ConnectionStage = Field(description="Terminal state of the attempt")
    failed_stage: ConnectionStage | None = Field(
        default=None, description="Stage the attempt failed in"
    )
    error: SSHSessionError | None = None
    session: Any = None
    tunnel: Tunnel | None = None
    artifact_path: str | None = None

    @property
    def succeeded(self) -> bool:
        """True if the session was registered"""
        return self.stage == ConnectionStage.SUCCEEDED

    @property
    def message(self) -> str:
        """Short human-readable outcome"""
        if self.succeeded:
            return "Connection successful!"
        if self.failed_stage is None:
            return "Connection failed"
        return FAILURE_MESSAGES.get(self.failed_stage, "Connection failed")

    @property
    def detail(self) -> str:
        """Diagnostic text of the failure, empty on success"""
        if self.error is None:
            return ""
        return "\n".join(part for part in (self.error.message, self.error.detail) if part)


class ConnectionOrchestrator:
    """Runs connection attempts and owns the resulting tunnels.

    One orchestrator corresponds to one editor session. Attempts are
    independent: each uses its own handshake file and its own tunnel.
    """

    def __init__(
        self,
        service: RemoteProjectsService,
        notifier: NotificationSink | None = None,
        runner: RemoteProcessRunner | None = None,
        exchanger: CertificateExchanger | None = None,
        tunnel_manager: TunnelManager | None = None,
    ):
        """Initialize the orchestrator.

        Components left as None are built from each attempt's config.

        Args:
            service: Consuming service to register connections with
            notifier: Receiver of progress messages
            runner: Remote command runner
            exchanger: Certificate exchanger
            tunnel_manager: Tunnel manager
        """
        self.service = service
        self.notifier = notifier or LoggingNotificationSink()
        self._runner = runner
        self._exchanger = exchanger
        self._tunnel_manager = tunnel_manager
        self._tunnels: list[tuple[TunnelManager, Tunnel]] = []
        self._state = ConnectionStage.IDLE

    @property
    def state(self) -> ConnectionStage:
        """Stage most recently entered by any attempt.

        While attempts overlap this only reflects whichever one advanced
        last; the outcome of a particular attempt is its ConnectionResult.
        """
        return self._state

    @property
    def tunnel(self) -> Tunnel | None:
        """Most recently opened tunnel that is still open"""
        for _, tunnel in reversed(self._tunnels):
            if not tunnel.closed:
                return tunnel
        return None

    @staticmethod
    def build_launch_args(config: ConnectionConfig, artifact_path: str | None) -> list[str]:
        """Arguments for the remote server launch script."""
        args = ["--timeout", str(config.timeout), "--port", str(config.remote_port)]
        if config.skip_certificates or artifact_path is None:
            args.append("-k")
            return args

        args.extend(
            [
                "--common-name",
                config.common_name,
                "--json-output-file",
                artifact_path,
                "--certs-dir",
                config.certs_dir,
            ]
        )
        return args

    def _enter(self, stage: ConnectionStage) -> ConnectionStage:
        logger.debug("Connection stage", stage=stage.value)
        self._state = stage
        return stage

    async def start_connection(self, config: ConnectionConfig) -> ConnectionResult:
        """Run one connection attempt.

        Stage failures are reported through the result, never raised.

        Args:
            config: Inputs for this attempt

        Returns:
            ConnectionResult describing success or the failed stage
        """
        runner = self._runner or RemoteProcessRunner.from_config(config)
        exchanger = self._exchanger or CertificateExchanger.from_config(
            config, runner=runner
        )
        tunnel_manager = self._tunnel_manager or TunnelManager.from_config(config)

        artifact_path = (
            None if config.skip_certificates else new_artifact_path(config.artifact_dir)
        )
        tunnel: Tunnel | None = None

        stage = self._enter(ConnectionStage.STARTING_REMOTE)
        self.notifier.on_info("Starting SSH connection...")
        logger.info(
            "Starting connection",
            host=config.hostname,
            local_port=config.local_port,
            remote_port=config.remote_port,
        )

        try:
            await runner.run(
                config.hostname,
                config.start_server_script,
                self.build_launch_args(config, artifact_path),
                config.timeout,
            )

            credentials: ConnectionCredentials | None = None
            if artifact_path is not None:
                stage = self._enter(ConnectionStage.EXCHANGING_CERTIFICATES)
                self.notifier.on_info("Fetching certificates...")
                credentials = await exchanger.fetch_certificates(
                    config.hostname, artifact_path
                )
            else:
                logger.warning(
                    "Skipping certificate exchange, connection is not authenticated",
                    host=config.hostname,
                )

            stage = self._enter(ConnectionStage.OPENING_TUNNEL)
            tunnel = await tunnel_manager.open(
                config.local_port, config.hostname, config.remote_port
            )

            stage = self._enter(ConnectionStage.REGISTERING)
            params = ConnectionParams.build(config, credentials)
            session = await self._register(params)
        except SSHSessionError as e:
            if tunnel is not None:
                await tunnel_manager.close(tunnel)
            return self._fail(stage, e, artifact_path)
        except BaseException:
            if tunnel is not None:
                await tunnel_manager.close(tunnel)
            self._enter(ConnectionStage.FAILED)
            raise

        self._tunnels.append((tunnel_manager, tunnel))
        self._enter(ConnectionStage.SUCCEEDED)
        self.notifier.on_success("Connection successful!")
        logger.info("Connection established", host=config.hostname, pid=tunnel.pid)
        return ConnectionResult(
            stage=ConnectionStage.SUCCEEDED,
            session=session,
            tunnel=tunnel,
            artifact_path=artifact_path,
        )

    async def _register(self, params: ConnectionParams) -> Any:
        logger.info("Registering connection", **params.to_log_dict())
        try:
            session = self.service.find_or_create(params)
            if inspect.isawaitable(session):
                session = await session
        except Exception as e:
            raise RegistrationError(str(e) or type(e).__name__, detail=repr(e)) from e
        return session

    def _fail(
        self,
        stage: ConnectionStage,
        error: SSHSessionError,
        artifact_path: str | None,
    ) -> ConnectionResult:
        self._enter(ConnectionStage.FAILED)
        result = ConnectionResult(
            stage=ConnectionStage.FAILED,
            failed_stage=stage,
            error=error,
            artifact_path=artifact_path,
        )
        logger.error(
            "Connection failed",
            stage=stage.value,
            error_type=type(error).__name__,
            error=error.message,
        )
        self.notifier.on_error(result.message, result.detail)
        return result

    async def close(self) -> None:
        """Close every tunnel owned by this session; safe to call repeatedly."""
        while self._tunnels:
            tunnel_manager, tunnel = self._tunnels.pop()
            await tunnel_manager.close(tunnel)
        self._state = ConnectionStage.IDLE

    async def __aenter__(self) -> "ConnectionOrchestrator":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
