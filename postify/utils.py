"""
Small helpers shared across Postify.

Timestamps: every instant Postify stores or compares is an aware UTC
``datetime``. Tenant zones only matter while parsing input, so the helpers
here normalise at the edges (``ensure_utc`` on the way in,
``parse_timestamp`` for rows read back from Supabase).

Retries: ``with_retry`` wraps idempotent reads (credential loads, due-job
polls) that may hit a dropped Supabase connection. Writes that change job
or post state are never retried blindly.
"""

import asyncio
import inspect
import logging
import time as time_module
import uuid
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Iterator, Optional, Tuple, Type, TypeVar, Union

from postify.exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Injectable "now" used by gates, supervisor and engine so tests can pin time.
Clock = Callable[[], datetime]


# ===========================================================================
# TIME AND IDS
# ===========================================================================


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime (the default ``Clock``)."""
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """New UUID4 string for job, post and channel primary keys."""
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """Normalise *dt* to aware UTC; naive values are taken as UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Convert a stored timestamp (ISO string or datetime) to aware UTC.

    Supabase returns ``TIMESTAMPTZ`` columns as ISO strings, sometimes
    with a trailing ``Z`` that older ``fromisoformat`` versions reject.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


# ===========================================================================
# RETRY
# ===========================================================================


def _backoff(max_attempts: int, base_delay: float) -> Iterator[Tuple[int, Optional[float]]]:
    """Yield ``(attempt, delay_after_failure)``; the last attempt has no delay."""
    for attempt in range(1, max_attempts + 1):
        if attempt < max_attempts:
            yield attempt, base_delay * (2 ** (attempt - 1))
        else:
            yield attempt, None


def _report(op_name: str, attempt: int, max_attempts: int, exc: Exception, delay: Optional[float]) -> None:
    if delay is None:
        logger.error(
            "[RETRY] %s gave up after %d attempts: %s", op_name, max_attempts, exc
        )
    else:
        logger.warning(
            "[RETRY] %s failed (%d/%d): %s; next try in %.1fs",
            op_name,
            attempt,
            max_attempts,
            exc,
            delay,
        )


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: Optional[str] = None,
) -> Callable:
    """Retry a sync or async callable with exponential backoff.

    The delay after attempt *n* is ``base_delay * 2 ** (n - 1)``. Exceptions
    outside *retryable_exceptions* propagate on the first occurrence.

    Raises:
        RetryExhaustedError: Every attempt raised a retryable exception.

    Usage::

        @with_retry(max_attempts=3, base_delay=1.0,
                    retryable_exceptions=(DatabaseError,))
        async def _load_desired(self, limit):
            return await self.credentials.list_active_credentials(limit=limit)
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        op_name = operation_name or func.__name__

        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> T:
                last_error: Optional[Exception] = None
                for attempt, delay in _backoff(max_attempts, base_delay):
                    try:
                        return await func(*args, **kwargs)
                    except retryable_exceptions as exc:
                        last_error = exc
                        _report(op_name, attempt, max_attempts, exc, delay)
                        if delay is not None:
                            await asyncio.sleep(delay)
                raise RetryExhaustedError(op_name, max_attempts, last_error)  # type: ignore[arg-type]

            return async_wrapper  # type: ignore[return-value]

        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt, delay in _backoff(max_attempts, base_delay):
                try:
                    return func(*args, **kwargs)
                except retryable_exceptions as exc:
                    last_error = exc
                    _report(op_name, attempt, max_attempts, exc, delay)
                    if delay is not None:
                        time_module.sleep(delay)
            raise RetryExhaustedError(op_name, max_attempts, last_error)  # type: ignore[arg-type]

        return sync_wrapper  # type: ignore[return-value]

    return decorator


__all__ = [
    "Clock",
    "utc_now",
    "generate_id",
    "ensure_utc",
    "parse_timestamp",
    "with_retry",
]
