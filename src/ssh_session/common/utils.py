"""Utility functions for SSH session setup."""

import shlex
from collections.abc import Sequence
from typing import Any

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535

# Field names holding certificate or key material
SENSITIVE_FIELDS = frozenset({"ca", "cert", "key"})
SENSITIVE_FIELD_PARTS = (
    "certificate",
    "client_key",
    "clientkey",
    "private_key",
    "password",
    "secret",
    "token",
)


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if (
        isinstance(port, bool)
        or not isinstance(port, int)
        or not (MIN_PORT <= port <= MAX_PORT)
    ):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Args:
        value: String value to validate
        field_name: Name of the field for error messages

    Returns:
        Stripped string value

    Raises:
        ValueError: If string is empty or only whitespace
    """
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value.strip()


def is_sensitive_field(name: str) -> bool:
    """Check whether a field name refers to certificate or key material."""
    lowered = name.lower()
    if lowered in SENSITIVE_FIELDS:
        return True
    return any(part in lowered for part in SENSITIVE_FIELD_PARTS)


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with sensitive fields masked.

    Certificates and keys are replaced entirely apart from their length,
    since even a suffix of a private key should not reach log files.

    Args:
        data: Dictionary potentially containing sensitive data

    Returns:
        Sanitized dictionary safe for logging
    """
    sanitized = {}
    for key, value in data.items():
        if is_sensitive_field(key) and value:
            sanitized[key] = f"<redacted {len(str(value))} chars>"
        else:
            sanitized[key] = value
    return sanitized


def format_command(argv: Sequence[str]) -> str:
    """Render an argument vector as a shell-quoted string for logs and errors."""
    return shlex.join(argv)
