"""Retry with exponential backoff for CRM calls."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx
import structlog

from billing_sync.config import get_settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule: ``base_delay * 2**(attempt - 1)`` capped at ``max_delay``."""

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_retries=settings.crm_max_retries,
            base_delay=settings.crm_retry_base_delay,
            max_delay=settings.crm_retry_max_delay,
        )

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        backoff = min(self.max_delay, self.base_delay * 2 ** (attempt - 1))
        if retry_after is not None and retry_after > backoff:
            return min(self.max_delay, retry_after)
        return backoff


def is_transient(error: BaseException) -> bool:
    """Classify an error as worth retrying: 429, 5xx or a network failure."""
    if isinstance(error, httpx.RequestError):
        return True
    status_code = getattr(error, "status_code", None)
    if status_code is None:
        return False
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


def _retry_after(error: BaseException) -> float | None:
    value = getattr(error, "retry_after", None)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    classify: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation: str = "crm_call",
) -> T:
    """Run ``fn`` until it succeeds, fails permanently or runs out of attempts.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        policy: Attempt bound and backoff schedule.
        classify: Returns True for errors that should be retried.
        sleep: Awaitable sleep (injected in tests).
        operation: Name used in log events.

    Returns:
        The result of the first successful attempt.

    Raises:
        The last error when it is not transient or retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if not classify(e) or attempt >= policy.max_retries:
                if attempt > 0:
                    logger.warning(
                        "retries_exhausted",
                        operation=operation,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                raise
            attempt += 1
            wait = policy.delay_for(attempt, _retry_after(e))
            logger.info(
                "retrying_after_error",
                operation=operation,
                attempt=attempt,
                max_retries=policy.max_retries,
                wait_seconds=wait,
                status_code=getattr(e, "status_code", None),
                error=str(e),
            )
            await sleep(wait)
