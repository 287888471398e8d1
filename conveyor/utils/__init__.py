"""Utility modules for Conveyor.

This package contains shared utilities:
- helpers: ids, timestamps, command-line building, debug logging
- retry: Retry loop with constant or exponential backoff
"""

from conveyor.utils.helpers import (
    build_command_line,
    debug_execution_log,
    new_id,
    utc_now_iso,
)

from conveyor.utils.retry import (
    RetryConfig,
    retry_sync,
)

__all__ = [
    # helpers
    "build_command_line",
    "debug_execution_log",
    "new_id",
    "utc_now_iso",
    # retry
    "RetryConfig",
    "retry_sync",
]
