"""
Base Service Class.

Minimal base class standardizing the logger pattern for all services.
Services extend this and add their own collaborators via __init__.
"""

from __future__ import annotations

import logging

from trustudsel.logger import StructuredLogger


class BaseService:
    """Base class for all service classes. Provides a logger and an
    audit-event helper."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    def _log_event(
        self,
        event: str,
        msg: str,
        *args: object,
        level: int = logging.INFO,
        **fields: object,
    ) -> None:
        """Log *msg* as the auth event *event*; see ``StructuredLogger.event``."""
        self._logger.event(event, msg, *args, level=level, **fields)
