"""Notification hooks for reporting connection progress to a host application."""

from typing import Protocol, runtime_checkable

from .common.logging import get_logger


@runtime_checkable
class NotificationSink(Protocol):
    """Receives lifecycle messages for display. Return values are ignored."""

    def on_info(self, message: str) -> None: ...

    def on_success(self, message: str) -> None: ...

    def on_error(self, message: str, detail: str = "") -> None: ...


class LoggingNotificationSink:
    """Default sink that writes notifications to the structured log."""

    def __init__(self, name: str = __name__):
        self._logger = get_logger(name)

    def on_info(self, message: str) -> None:
        self._logger.info(message)

    def on_success(self, message: str) -> None:
        self._logger.info(message, outcome="success")

    def on_error(self, message: str, detail: str = "") -> None:
        self._logger.error(message, detail=detail)
