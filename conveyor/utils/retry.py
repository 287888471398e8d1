"""Attempt loop for stage commands.

Stages retry with a constant delay. Exponential growth and jitter are kept
for callers that want them.
"""

import logging
import random
import threading
import time
from typing import Any, Callable, Optional, Type, Tuple

from conveyor.errors import CommandCancelledError, CommandError, CommandNotAllowedError

logger = logging.getLogger(__name__)

RetryHook = Callable[[int, Exception, float], None]


class RetryConfig:
    """How many times to re-run a command and how long to pause in between."""

    def __init__(
        self,
        max_retries: int = 0,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 1.0,
        jitter: bool = False,
        retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
        non_retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    ):
        """
        Args:
            max_retries: Extra attempts allowed after the first one fails
            base_delay: Pause before the first retry, in seconds
            max_delay: Ceiling for any single pause
            exponential_base: Growth factor per retry; 1.0 keeps the pause constant
            jitter: Spread pauses by up to a quarter in either direction
            retryable_exceptions: Failures worth another attempt (CommandError by default)
            non_retryable_exceptions: Failures that end the loop at once, even when
                they subclass a retryable type
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or (CommandError,)
        self.non_retryable_exceptions = non_retryable_exceptions or (
            CommandNotAllowedError,
            CommandCancelledError,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, retry_index: int) -> float:
        """Pause in seconds before retry number ``retry_index`` (counting from 0)."""
        delay = min(self.base_delay * self.exponential_base ** retry_index, self.max_delay)
        if not self.jitter:
            return delay

        spread = delay / 4
        return max(0.1, delay + random.uniform(-spread, spread))


def _pause(delay: float, cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is None:
        time.sleep(delay)
    elif cancel_event.wait(delay):
        raise CommandCancelledError()


def retry_sync(
    func: Callable[..., Any],
    *args,
    config: Optional[RetryConfig] = None,
    cancel_event: Optional[threading.Event] = None,
    on_retry: Optional[RetryHook] = None,
    **kwargs
) -> Any:
    """
    Call ``func`` until it succeeds or the configured attempts run out.

    Exceptions outside ``config.retryable_exceptions`` propagate immediately.
    Setting ``cancel_event`` during a pause raises CommandCancelledError
    without starting another attempt.

    Args:
        func: Callable for one attempt
        config: Attempt budget and pauses (RetryConfig() if None)
        cancel_event: Cuts a pause short
        on_retry: Receives (failed attempt number, error, pause) before each pause

    Returns:
        Whatever the first successful attempt returned
    """
    config = config or RetryConfig()

    attempt = 0
    while True:
        attempt += 1
        try:
            return func(*args, **kwargs)
        except config.non_retryable_exceptions as e:
            logger.error(f"Giving up without retry: {e}")
            raise
        except config.retryable_exceptions as e:
            if attempt >= config.max_attempts:
                logger.error(f"All {attempt} attempt(s) failed: {e}")
                raise

            delay = config.calculate_delay(attempt - 1)
            logger.warning(
                f"Attempt {attempt}/{config.max_attempts} failed ({e}); "
                f"next attempt in {delay:.2f}s"
            )
            if on_retry:
                on_retry(attempt, e, delay)
            _pause(delay, cancel_event)
