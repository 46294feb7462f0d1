"""Notification sink used by notification actions."""

from __future__ import annotations

import logging
from typing import Protocol

from workflow_governor.rules.models import NotificationLevel
from workflow_governor.workflow.models import WorkflowContext

_LEVELS: dict[str, int] = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class Notifier(Protocol):
    def notify(self, level: NotificationLevel, message: str, context: WorkflowContext) -> None:
        """Deliver a message. Return values are ignored."""
        ...


class LoggingNotifier:
    """Write notifications to a dedicated logger."""

    def __init__(self, logger_name: str = "workflow_governor.notifications") -> None:
        self._logger = logging.getLogger(logger_name)

    def notify(self, level: NotificationLevel, message: str, context: WorkflowContext) -> None:
        self._logger.log(
            _LEVELS.get(level, logging.INFO),
            message,
            extra={"session_id": context.session_id, "state": context.current_state.value},
        )
