"""Tests for the handshake artifact and CertificateExchanger."""

import json
import re
from unittest.mock import AsyncMock, Mock, patch

import pytest

from ssh_session.common.exceptions import (
    ExchangeError,
    ExchangeErrorKind,
    MalformedArtifactError,
    ProcessError,
    RemoteStartFailedError,
    TransferFailedError,
)
from ssh_session.config import ConnectionConfig
from ssh_session.exchange import (
    CertificateExchanger,
    ConnectionCredentials,
    HandshakeArtifact,
    new_artifact_path,
)
from ssh_session.process import CommandResult

ARTIFACT_PATH = "/tmp/ssh-handshake-0123456789abcdef0123456789abcdef"


def copy_result(content=b"", exit_status=0, stderr=""):
    return CommandResult(
        args=("scp",), exit_status=exit_status, stdout=content, stderr=stderr
    )


def artifact_bytes(**fields):
    document = {"success": True, "ca": "CA", "cert": "CERT", "key": "KEY"}
    document.update(fields)
    return json.dumps(document).encode()


@pytest.fixture
def runner():
    mock_runner = Mock()
    mock_runner.run = AsyncMock(return_value=copy_result())
    return mock_runner


@pytest.fixture
def exchanger(runner):
    return CertificateExchanger(runner=runner)


class TestArtifactPath:
    """Test handshake artifact path generation."""

    def test_path_format(self):
        """Test paths live in the given directory with a random token."""
        path = new_artifact_path("/var/tmp")
        assert re.fullmatch(r"/var/tmp/ssh-handshake-[0-9a-f]{32}", path)

    def test_paths_are_unique(self):
        """Test every call yields a fresh path."""
        paths = {new_artifact_path() for _ in range(1000)}
        assert len(paths) == 1000


class TestHandshakeArtifact:
    """Test artifact parsing."""

    def test_parse_success(self):
        """Test a complete document parses."""
        artifact = HandshakeArtifact.parse(artifact_bytes())
        assert artifact.success is True
        assert (artifact.ca, artifact.cert, artifact.key) == ("CA", "CERT", "KEY")

    def test_extra_fields_ignored(self):
        """Test unknown fields written by newer servers are ignored."""
        artifact = HandshakeArtifact.parse(artifact_bytes(hostname="devbox"))
        assert artifact.success is True

    @pytest.mark.parametrize(
        "content",
        [
            b"",
            b"not json",
            b"[1, 2, 3]",
            b'{"success": true, "ca": "CA", "cert": "CERT"}',
            b'{"success": "yes", "ca": "", "cert": "", "key": ""}',
            b'{"success": true, "ca": null, "cert": "", "key": ""}',
            b"\xff\xfe",
        ],
    )
    def test_parse_malformed(self, content):
        """Test invalid documents raise MalformedArtifactError."""
        with pytest.raises(MalformedArtifactError) as exc_info:
            HandshakeArtifact.parse(content)

        assert exc_info.value.kind == ExchangeErrorKind.MALFORMED_ARTIFACT
        assert isinstance(exc_info.value, ExchangeError)

    def test_malformed_detail_omits_values(self):
        """Test error detail never echoes key material."""
        with pytest.raises(MalformedArtifactError) as exc_info:
            HandshakeArtifact.parse(b'{"success": "maybe", "ca": "", "cert": "", "key": "TOPSECRET"}')

        assert "success" in exc_info.value.detail
        assert "TOPSECRET" not in exc_info.value.detail

    @pytest.mark.parametrize(
        "content",
        [
            b'{"success": false}',
            b'{"success": false, "ca": null, "cert": null, "key": null}',
            b'{"success": false, "error": "port in use"}',
        ],
    )
    def test_failed_start_needs_no_credentials(self, content):
        """Test a failure document parses without certificate fields."""
        artifact = HandshakeArtifact.parse(content)

        assert artifact.success is False
        with pytest.raises(RemoteStartFailedError):
            ConnectionCredentials.from_artifact(artifact)

    def test_successful_start_names_missing_fields(self):
        """Test a success document without credentials is malformed."""
        with pytest.raises(MalformedArtifactError) as exc_info:
            HandshakeArtifact.parse(b'{"success": true, "ca": "CA"}')

        assert "cert, key" in exc_info.value.detail

    def test_repr_hides_key_material(self):
        """Test certificate fields are left out of repr."""
        artifact = HandshakeArtifact.parse(artifact_bytes(key="TOPSECRET"))
        assert "TOPSECRET" not in repr(artifact)


class TestConnectionCredentials:
    """Test credential construction."""

    def test_from_successful_artifact(self):
        """Test credentials map 1:1 from the artifact."""
        credentials = ConnectionCredentials.from_artifact(
            HandshakeArtifact.parse(artifact_bytes())
        )

        assert credentials.certificate_authority_certificate == "CA"
        assert credentials.client_certificate == "CERT"
        assert credentials.client_key == "KEY"

    def test_from_failed_artifact(self):
        """Test a failed artifact never yields credentials."""
        artifact = HandshakeArtifact.parse(
            artifact_bytes(success=False, ca="", cert="", key="")
        )

        with pytest.raises(RemoteStartFailedError) as exc_info:
            ConnectionCredentials.from_artifact(artifact)

        assert exc_info.value.kind == ExchangeErrorKind.REMOTE_START_FAILED

    def test_camel_case_aliases(self):
        """Test credentials dump to the service's wire names."""
        credentials = ConnectionCredentials(
            certificate_authority_certificate="CA",
            client_certificate="CERT",
            client_key="KEY",
        )

        assert credentials.model_dump(by_alias=True) == {
            "certificateAuthorityCertificate": "CA",
            "clientCertificate": "CERT",
            "clientKey": "KEY",
        }
        assert "KEY" not in repr(credentials)


class TestCertificateExchanger:
    """Test the certificate exchange."""

    def test_build_copy_command(self):
        """Test scp streams the remote file to stdout."""
        exchanger = CertificateExchanger(
            ssh_options=["Port=2222"], remove_artifact=False
        )

        argv = exchanger.build_copy_command("devbox", ARTIFACT_PATH)

        assert argv == [
            "scp",
            "-q",
            "-o",
            "Port=2222",
            f"devbox:{ARTIFACT_PATH}",
            "/dev/stdout",
        ]

    def test_from_config(self):
        """Test settings are taken from the config."""
        config = ConnectionConfig(
            hostname="devbox",
            start_server_script="s",
            scp_binary="/opt/bin/scp",
            timeout=30,
            remove_artifact=False,
        )

        exchanger = CertificateExchanger.from_config(config)

        assert exchanger.scp_binary == "/opt/bin/scp"
        assert exchanger.timeout == 30
        assert exchanger.remove_artifact is False

    def test_default_runner_uses_ssh_binary(self):
        """Test the cleanup runner uses the configured ssh program."""
        exchanger = CertificateExchanger(
            ssh_binary="/opt/bin/ssh", ssh_options=["Port=2222"]
        )

        assert exchanger.runner.ssh_binary == "/opt/bin/ssh"
        assert exchanger.runner.ssh_options == ("Port=2222",)

    def test_no_runner_needed_without_cleanup(self):
        """Test no runner is created when the artifact is kept."""
        exchanger = CertificateExchanger(remove_artifact=False)
        assert exchanger.runner is None

    @pytest.mark.asyncio
    async def test_fetch_success(self, exchanger, runner):
        """Test a successful exchange returns the artifact's credentials."""
        with patch(
            "ssh_session.exchange.run_command",
            AsyncMock(return_value=copy_result(artifact_bytes())),
        ) as mock_run:
            credentials = await exchanger.fetch_certificates("devbox", ARTIFACT_PATH)

        assert credentials == ConnectionCredentials(
            certificate_authority_certificate="CA",
            client_certificate="CERT",
            client_key="KEY",
        )
        mock_run.assert_awaited_once_with(
            ["scp", "-q", f"devbox:{ARTIFACT_PATH}", "/dev/stdout"], timeout=60
        )
        runner.run.assert_awaited_once_with("devbox", "rm", ["-f", ARTIFACT_PATH], 60)

    @pytest.mark.asyncio
    async def test_fetch_empty_credentials_pass_through(self, exchanger):
        """Test field contents are not validated, only structural success."""
        content = artifact_bytes(ca="", cert="", key="")

        with patch(
            "ssh_session.exchange.run_command",
            AsyncMock(return_value=copy_result(content)),
        ):
            credentials = await exchanger.fetch_certificates("devbox", ARTIFACT_PATH)

        assert credentials.certificate_authority_certificate == ""
        assert credentials.client_certificate == ""
        assert credentials.client_key == ""

    @pytest.mark.asyncio
    async def test_transfer_failure_never_parses(self, exchanger, runner):
        """Test a failed copy is reported before any parsing happens."""
        with patch(
            "ssh_session.exchange.run_command",
            AsyncMock(return_value=copy_result(b"", exit_status=1, stderr="No such file")),
        ):
            with patch.object(HandshakeArtifact, "parse") as mock_parse:
                with pytest.raises(TransferFailedError) as exc_info:
                    await exchanger.fetch_certificates("devbox", ARTIFACT_PATH)

        mock_parse.assert_not_called()
        runner.run.assert_not_called()
        assert exc_info.value.kind == ExchangeErrorKind.TRANSFER_FAILED
        assert exc_info.value.detail == "No such file"

    @pytest.mark.asyncio
    async def test_transfer_scp_missing(self, exchanger):
        """Test a missing scp binary is a transfer failure."""
        with patch(
            "ssh_session.exchange.run_command",
            AsyncMock(side_effect=FileNotFoundError("scp")),
        ):
            with pytest.raises(TransferFailedError, match="Failed to run scp"):
                await exchanger.fetch_certificates("devbox", ARTIFACT_PATH)

    @pytest.mark.asyncio
    async def test_transfer_timeout(self, exchanger):
        """Test a hanging copy is a transfer failure."""
        with patch(
            "ssh_session.exchange.run_command", AsyncMock(side_effect=TimeoutError())
        ):
            with pytest.raises(TransferFailedError, match="timed out"):
                await exchanger.fetch_certificates("devbox", ARTIFACT_PATH)

    @pytest.mark.asyncio
    async def test_remote_start_failed(self, exchanger, runner):
        """Test success false is reported distinctly from transport failure."""
        content = artifact_bytes(success=False, ca="", cert="", key="")

        with patch(
            "ssh_session.exchange.run_command",
            AsyncMock(return_value=copy_result(content)),
        ):
            with pytest.raises(RemoteStartFailedError):
                await exchanger.fetch_certificates("devbox", ARTIFACT_PATH)

        runner.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_malformed_artifact(self, exchanger, runner):
        """Test transferred garbage is a malformed artifact and still cleaned up."""
        with patch(
            "ssh_session.exchange.run_command",
            AsyncMock(return_value=copy_result(b"<html>")),
        ):
            with pytest.raises(MalformedArtifactError):
                await exchanger.fetch_certificates("devbox", ARTIFACT_PATH)

        runner.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_ignored(self, exchanger, runner):
        """Test failing to delete the remote file does not fail the exchange."""
        runner.run.side_effect = ProcessError("rm failed", exit_status=1)

        with patch(
            "ssh_session.exchange.run_command",
            AsyncMock(return_value=copy_result(artifact_bytes())),
        ):
            credentials = await exchanger.fetch_certificates("devbox", ARTIFACT_PATH)

        assert credentials.client_key == "KEY"

    @pytest.mark.asyncio
    async def test_cleanup_disabled(self, runner):
        """Test the remote file is kept when removal is disabled."""
        exchanger = CertificateExchanger(runner=runner, remove_artifact=False)

        with patch(
            "ssh_session.exchange.run_command",
            AsyncMock(return_value=copy_result(artifact_bytes())),
        ):
            await exchanger.fetch_certificates("devbox", ARTIFACT_PATH)

        runner.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_key_material_not_logged(self, exchanger):
        """Test no log call carries the artifact's secrets."""
        content = artifact_bytes(key="TOPSECRET-KEY", cert="TOPSECRET-CERT")

        with patch(
            "ssh_session.exchange.run_command",
            AsyncMock(return_value=copy_result(content)),
        ):
            with patch("ssh_session.exchange.logger") as mock_logger:
                await exchanger.fetch_certificates("devbox", ARTIFACT_PATH)

        assert "TOPSECRET" not in str(mock_logger.mock_calls)
