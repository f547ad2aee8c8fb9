"""
Structured audit logging for merge operations.

Audit events go to the ``mpi.audit`` logger with the event name and context
attached as ``extra`` fields, so the JSON formatter emits one flat record per
event. Where the records end up is a deployment concern.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

audit_logger = logging.getLogger("mpi.audit")


def _jsonable(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    return value


class AuditLogger:
    """Audit event sink used by the merge orchestrator."""

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or audit_logger

    def info(self, event: str, context: dict[str, Any] | None = None) -> None:
        self._logger.info(
            event,
            extra={"audit_event": event, **{k: _jsonable(v) for k, v in (context or {}).items()}},
        )

    def error(self, event: str, exc: BaseException, context: dict[str, Any] | None = None) -> None:
        self._logger.error(
            f"{event}: {exc}",
            extra={
                "audit_event": event,
                "error": str(exc),
                "error_type": type(exc).__name__,
                **{k: _jsonable(v) for k, v in (context or {}).items()},
            },
            exc_info=exc,
        )
