"""
Retry policy for provider operations.

Provider calls are retried only when they raise a ProviderError marked
retryable (throttling, eventual consistency, timeouts). Waits between
attempts grow exponentially and are interrupted by the run's cancel event.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from ..errors import ProviderError

R = TypeVar("R")

logger = logging.getLogger(__name__)


class _RetryCancelled(Exception):
    """Raised from the sleep hook when the cancel event fires mid-wait."""
    pass


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        attempts: Maximum number of total attempts (not just failures)
        delay: Seconds to wait after the first failure
        backoff: Multiplier applied to the delay after each failure
        max_delay: Upper bound for a single wait
    """
    attempts: int = 3
    delay: float = 2.0
    backoff: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            attempts=max(1, int(values.get("attempts", cls.attempts))),
            delay=float(values.get("delay", cls.delay)),
            backoff=float(values.get("backoff", cls.backoff)),
            max_delay=float(values.get("max_delay", cls.max_delay)),
        )

    def wait_strategy(self) -> wait_exponential:
        """delay * backoff ** (n - 1) after the n-th failure, capped at max_delay."""
        return wait_exponential(multiplier=self.delay, exp_base=self.backoff, max=self.max_delay)

    def call(
        self,
        func: Callable[..., R],
        *args: Any,
        description: str = "",
        cancel_event: Optional[threading.Event] = None,
        **kwargs: Any,
    ) -> R:
        """
        Call func, retrying on retryable ProviderErrors.

        Non-retryable errors and the final failure propagate unchanged.
        A set cancel_event stops further attempts.
        """
        label = description or getattr(func, "__qualname__", repr(func))
        failures: List[BaseException] = []

        def _cancelled(retry_state: RetryCallState) -> bool:
            return cancel_event is not None and cancel_event.is_set()

        def _before_sleep(retry_state: RetryCallState):
            exc = retry_state.outcome.exception()
            failures.append(exc)
            logger.warning(
                f"Attempt {retry_state.attempt_number}/{self.attempts} for {label} failed: {exc}; "
                f"retrying in {retry_state.next_action.sleep:.1f}s"
            )

        def _sleep(seconds: float):
            if cancel_event is None:
                time.sleep(seconds)
            elif cancel_event.wait(seconds):
                raise _RetryCancelled()

        retrying = Retrying(
            stop=stop_any(stop_after_attempt(self.attempts), _cancelled),
            wait=self.wait_strategy(),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_before_sleep,
            sleep=_sleep,
            reraise=True,
        )

        try:
            return retrying(func, *args, **kwargs)
        except _RetryCancelled:
            logger.info(f"Cancelled while waiting to retry {label}")
            raise failures[-1] from None
        except ProviderError as exc:
            if exc.retryable and not _cancelled(None):
                logger.error(f"All {self.attempts} attempts failed for {label}: {exc}")
            elif exc.retryable:
                logger.info(f"Cancelled; not retrying {label}")
            raise
