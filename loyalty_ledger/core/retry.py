"""Bounded retry with backoff for idempotent store reads."""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loyalty_ledger.core.config import get_settings
from loyalty_ledger.core.exceptions import StoreUnavailable
from loyalty_ledger.core.logging import get_logger
from loyalty_ledger.stores.base import StoreError

T = TypeVar("T")

log = get_logger(__name__)


async def retry_read(
    operation: str,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int | None = None,
    backoff_s: float | None = None,
) -> T:
    """Call fn(*args); retry on StoreError with exponential backoff, then raise StoreUnavailable.

    Only for reads: a write that failed halfway may have applied.
    """
    settings = get_settings()
    attempts = attempts or settings.store_read_attempts
    delay = settings.store_retry_backoff_s if backoff_s is None else backoff_s
    for attempt in range(1, attempts + 1):
        try:
            return await fn(*args)
        except StoreError as e:
            if attempt == attempts:
                log.error("store_read_failed", operation=operation, attempts=attempts, error=str(e))
                raise StoreUnavailable(operation) from e
            log.warning("store_read_retry", operation=operation, attempt=attempt, error=str(e))
            await asyncio.sleep(delay * 2 ** (attempt - 1))
    raise StoreUnavailable(operation)
