import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings
from app.services.errors import TransientStoreError

logger = structlog.get_logger()

T = TypeVar("T")

# I/O failures worth retrying. Business-rule errors never match.
TRANSIENT_STORE_ERRORS = (OperationalError, asyncio.TimeoutError, ConnectionError)


async def with_store_retry(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    attempts: int | None = None,
) -> T:
    """Run ``operation`` with bounded exponential backoff on transient store errors.

    The session is rolled back between attempts so each one starts from a
    clean transaction. Raises TransientStoreError once attempts are exhausted.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(TRANSIENT_STORE_ERRORS),
        stop=stop_after_attempt(attempts or settings.STORE_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.1, max=settings.STORE_RETRY_MAX_WAIT_SECONDS),
        reraise=False,
    )
    try:
        async for attempt in retrying:
            with attempt:
                try:
                    return await operation()
                except TRANSIENT_STORE_ERRORS as e:
                    await db.rollback()
                    logger.warning(
                        "store_call_failed",
                        operation=name,
                        attempt=attempt.retry_state.attempt_number,
                        error_type=type(e).__name__,
                    )
                    raise
    except RetryError as e:
        logger.error("store_unavailable", operation=name)
        raise TransientStoreError(f"Record store unavailable during {name}") from e.last_attempt.exception()
    raise AssertionError("unreachable")  # pragma: no cover
