"""
Reusable retry policy for calls to external collaborators.

A single RetryPolicy describes how many times to try, how long to wait
between attempts and how much total time an operation may consume. The
same policy object drives both in-process retries (``with_retry``) and the
job queue's backoff between task attempts (``RetryPolicy.delay_for``).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DelayStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration shared by every external call.

    Attributes:
        max_attempts: Total number of attempts, including the first one
        delay_strategy: How the wait grows between attempts
        delay: Base delay in seconds
        max_delay: Upper bound for a single wait, in seconds
        timeout: Total time budget in seconds (None means unbounded)
    """

    max_attempts: int = 3
    delay_strategy: DelayStrategy = DelayStrategy.EXPONENTIAL
    delay: float = 1.0
    max_delay: float = 60.0
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must not be negative")
        # Accept plain strings coming from YAML.
        object.__setattr__(self, "delay_strategy", DelayStrategy(self.delay_strategy))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=int(config.get("max_attempts", 3)),
            delay_strategy=DelayStrategy(config.get("strategy", DelayStrategy.EXPONENTIAL.value)),
            delay=float(config.get("delay", 1.0)),
            max_delay=float(config.get("max_delay", 60.0)),
            timeout=float(config["timeout"]) if config.get("timeout") is not None else None,
        )

    def delay_for(self, attempt: int) -> float:
        """
        Wait time after the given (1-based) failed attempt.

        Example:
            >>> RetryPolicy(delay=2, delay_strategy="exponential").delay_for(3)
            8.0
        """
        attempt = max(1, attempt)
        if self.delay_strategy is DelayStrategy.FIXED:
            wait = self.delay
        elif self.delay_strategy is DelayStrategy.LINEAR:
            wait = self.delay * attempt
        else:
            wait = self.delay * (2 ** (attempt - 1))
        return float(min(wait, self.max_delay))


def with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call ``fn`` until it succeeds or the policy gives up.

    Args:
        fn: Zero-argument callable to invoke
        policy: Attempt count, delay strategy and timeout budget
        retry_on: Exception types that trigger another attempt; anything
            else propagates immediately
        description: Label used in log messages
        sleep: Injected for tests
        clock: Injected for tests

    Returns:
        Whatever ``fn`` returns on its first successful call

    Raises:
        The last exception raised by ``fn`` once attempts or time run out
    """
    started = clock()
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                logger.warning(f"{description} failed after {attempt} attempt(s): {exc}")
                raise

            wait = policy.delay_for(attempt)
            if policy.timeout is not None and clock() - started + wait > policy.timeout:
                logger.warning(f"{description} exceeded its {policy.timeout}s budget after {attempt} attempt(s): {exc}")
                raise

            logger.info(f"{description} attempt {attempt}/{policy.max_attempts} failed ({exc}); retrying in {wait:.2f}s")
            sleep(wait)
