"""High-level API for starting SSH development sessions.

This module provides simple functions for the common case of one host, one
consuming service and default components.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from .common.logging import get_logger
from .config import ConnectionConfig
from .notifications import NotificationSink
from .orchestrator import ConnectionOrchestrator, ConnectionResult, RemoteProjectsService

logger = get_logger(__name__)


async def connect(
    hostname: str,
    start_server_script: str,
    service: RemoteProjectsService,
    *,
    notifier: NotificationSink | None = None,
    **options: Any,
) -> ConnectionResult:
    """Start a server on ``hostname``, tunnel to it and register the session.

    The caller owns the tunnel of a successful result and must close it with
    ``await result.tunnel.close()``; use managed_connection() to have that
    done automatically.

    Args:
        hostname: Remote host to connect to
        start_server_script: Server launch script on the remote host
        service: Consuming service to register the connection with
        notifier: Receiver of progress messages (logs by default)
        **options: Further ConnectionConfig fields (ports, cwd, timeout, ...)

    Returns:
        ConnectionResult of the attempt

    Example:
        >>> result = await connect("devbox", "~/bin/start-server", service)
        >>> if result.succeeded:
        ...     print(f"Forwarding localhost:{result.tunnel.local_port}")
    """
    config = ConnectionConfig(
        hostname=hostname, start_server_script=start_server_script, **options
    )
    orchestrator = ConnectionOrchestrator(service, notifier=notifier)
    return await orchestrator.start_connection(config)


@asynccontextmanager
async def managed_connection(
    config: ConnectionConfig,
    service: RemoteProjectsService,
    *,
    notifier: NotificationSink | None = None,
) -> AsyncIterator[ConnectionResult]:
    """Context manager that closes the session tunnel on exit.

    Args:
        config: Connection inputs
        service: Consuming service to register the connection with
        notifier: Receiver of progress messages (logs by default)

    Yields:
        ConnectionResult of the attempt, successful or not

    Example:
        >>> async with managed_connection(config, service) as result:
        ...     if result.succeeded:
        ...         await work_with(result.session)
        # Tunnel automatically closed here
    """
    async with ConnectionOrchestrator(service, notifier=notifier) as orchestrator:
        result = await orchestrator.start_connection(config)
        try:
            yield result
        finally:
            logger.debug("Leaving managed connection", stage=result.stage.value)
