import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from projecthub.core.config import (
    DB_RETRY_BACKOFF_FACTOR,
    DB_RETRY_INITIAL_DELAY,
    DB_RETRY_MAX_ATTEMPTS,
    DB_RETRY_MAX_DELAY,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = DB_RETRY_MAX_ATTEMPTS
    initial_delay: float = DB_RETRY_INITIAL_DELAY
    max_delay: float = DB_RETRY_MAX_DELAY
    backoff_factor: float = DB_RETRY_BACKOFF_FACTOR

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")

    def delays(self):
        """Yield the wait before each retry (max_attempts - 1 values)."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay = delay * self.backoff_factor


def acquire_with_retry(
    connect: Callable[[], T],
    policy: ReconnectPolicy | None = None,
    *,
    name: str = "resource",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `connect` until it succeeds or the policy runs out of attempts.

    The last exception is re-raised when every attempt failed.
    """
    policy = policy or ReconnectPolicy()
    delays = policy.delays()
    attempt = 0

    while True:
        attempt += 1
        try:
            result = connect()
        except Exception as exc:
            logger.warning(
                "%s connection attempt %d/%d failed: %s",
                name,
                attempt,
                policy.max_attempts,
                exc,
            )
            delay = next(delays, None)
            if delay is None:
                logger.error("%s unreachable after %d attempts", name, attempt)
                raise
            sleep(delay)
            continue

        if attempt > 1:
            logger.info("%s connected after %d attempts", name, attempt)
        return result
