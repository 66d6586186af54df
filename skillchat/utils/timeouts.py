import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pymongo.errors import ExecutionTimeout, NetworkTimeout, ServerSelectionTimeoutError

from skillchat.config import settings
from skillchat.exceptions import OperationTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], operation: str, timeout: Optional[float] = None) -> T:
    """Await a store call, raising OperationTimeout past the deadline.

    Driver-side timeouts count as the same failure, whichever fires first.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout or settings.STORE_TIMEOUT_SECONDS)
    except (asyncio.TimeoutError, NetworkTimeout, ExecutionTimeout, ServerSelectionTimeoutError) as exc:
        raise OperationTimeout(operation) from exc


async def retry_read(
    fn: Callable[[], Awaitable[T]],
    operation: str,
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
) -> T:
    """Retry a read on OperationTimeout with exponential backoff.

    Only for reads; sends surface their timeout immediately.
    """
    attempts = attempts or settings.READ_RETRY_ATTEMPTS
    backoff = settings.READ_RETRY_BACKOFF_SECONDS if backoff is None else backoff
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except OperationTimeout:
            if attempt == attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning("%s timed out (attempt %d/%d), retrying in %.2fs", operation, attempt, attempts, delay)
            await asyncio.sleep(delay)
    raise OperationTimeout(operation)


async def collect(cursor: Any, length: Optional[int] = None) -> list:
    return await cursor.to_list(length=length)
