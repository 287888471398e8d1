import os
import logging
import uuid
from datetime import datetime, timezone
from flask import current_app

logger = logging.getLogger(__name__)


def _debug_execution_enabled() -> bool:
    value = os.environ.get("CONVEYOR_DEBUG_EXECUTION", "")
    return value.lower() in {"1", "true", "yes"}


def debug_execution_log(message: str) -> None:
    if not _debug_execution_enabled():
        return
    try:
        current_app.logger.info(message)
    except RuntimeError:
        # No app context (background thread or CLI)
        logger.info(message)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def build_command_line(command: str, args=None) -> str:
    """Join a command and its arguments with single spaces, without quoting."""
    return " ".join([command, *(args or [])])
