"""Log utilities that keep the request audit trail and process logs in sync."""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict

from sqlalchemy.orm import Session

from .models import RequestLog

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_request_logger = logging.getLogger("tryon.requests")
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def emit_log(
    session: Session,
    request_id: uuid.UUID,
    message: str,
    *,
    level: str = "info",
    metadata: Dict[str, Any] | None = None,
) -> RequestLog:
    """Persist a diagnostic entry for a request and mirror it to the logger.

    Entries are internal only; provider error text and other diagnostics may
    be stored here but never returned to shoppers.
    """

    metadata = metadata or {}
    entry = RequestLog(
        id=uuid.uuid4(),
        request_id=request_id,
        message=message,
        level=level,
        data=metadata,
    )
    session.add(entry)
    session.commit()

    _request_logger.log(
        _LEVELS.get(level, logging.INFO),
        "%s request=%s %s",
        message,
        request_id,
        metadata,
    )
    return entry
