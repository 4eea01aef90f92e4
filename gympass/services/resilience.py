from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy.exc import InterfaceError, OperationalError

from gympass.core.config import get_settings
from gympass.core.errors import InfrastructureError, StorageUnavailableError


logger = logging.getLogger(__name__)


# Driver-level failures that mean "storage unreachable or corrupt", not a domain problem.
StorageFailure = (OperationalError, InterfaceError, OSError)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.storage_retry_max_attempts,
        backoff_ms=settings.storage_retry_backoff_ms,
    )


def _default_retryable(exc: Exception) -> bool:
    return isinstance(exc, InfrastructureError)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Jittered exponential backoff; domain errors propagate on the first attempt.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles non-retryable failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            logger.warning("storage_retry attempt=%s error=%s", attempt, exc)
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1


@asynccontextmanager
async def storage_errors(slug: str | None = None) -> AsyncIterator[None]:
    # Translate driver failures into StorageUnavailableError so callers can tell them from domain errors.
    try:
        yield
    except StorageFailure as exc:
        logger.error("storage_unavailable slug=%s error=%s", slug, exc, exc_info=exc)
        raise StorageUnavailableError(str(exc), slug=slug) from exc
