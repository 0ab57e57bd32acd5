"""Connection configuration using Pydantic for validation."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .common.utils import validate_non_empty_string


class ConnectionConfig(BaseModel):
    """Immutable inputs for one SSH session attempt."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    hostname: str = Field(min_length=1, description="Remote host to connect to")
    start_server_script: str = Field(
        min_length=1, description="Path of the server launch script on the remote host"
    )
    cwd: str = Field(default="~", description="Remote path to open once connected")
    local_port: int = Field(
        default=1234, ge=1, le=65535, description="Local port of the SSH tunnel"
    )
    remote_port: int = Field(
        default=8888, ge=1, le=65535, description="Port the remote server listens on"
    )
    timeout: int = Field(
        default=60, ge=1, le=3600, description="Per-attempt timeout in seconds"
    )
    display_title: str = Field(
        default="SSH Tunnel", min_length=1, description="Name shown for the session"
    )
    common_name: str = Field(
        default="localhost",
        min_length=1,
        description="Certificate common name; the session connects through the tunnel",
    )
    certs_dir: str = Field(
        default="/tmp", min_length=1, description="Remote directory for certificates"
    )
    artifact_dir: str = Field(
        default="/tmp", min_length=1, description="Remote directory for the handshake file"
    )
    skip_certificates: bool = Field(
        default=False, description="Start the server without TLS (-k) and skip the exchange"
    )
    remove_artifact: bool = Field(
        default=True, description="Delete the remote handshake file after retrieval"
    )
    ssh_binary: str = Field(default="ssh", min_length=1)
    scp_binary: str = Field(default="scp", min_length=1)
    ssh_options: tuple[str, ...] = Field(
        default=(), description="Extra -o options passed to every ssh and scp call"
    )

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        """Reject host names that ssh would parse as options or split on."""
        v = validate_non_empty_string(v, "Hostname")
        if v.startswith("-"):
            raise ValueError("Hostname cannot start with '-'")
        if any(char.isspace() for char in v):
            raise ValueError("Hostname cannot contain whitespace")
        return v

    @field_validator("ssh_options")
    @classmethod
    def validate_ssh_options(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Validate ssh options are in Key=Value form."""
        for option in v:
            key, sep, _ = option.partition("=")
            if not sep or not key.strip():
                raise ValueError(f"SSH option must be in Key=Value form: {option!r}")
        return v

    @property
    def ssh_option_args(self) -> list[str]:
        """Extra ssh options as command line arguments."""
        args: list[str] = []
        for option in self.ssh_options:
            args.extend(["-o", option])
        return args
