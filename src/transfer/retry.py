# src/transfer/retry.py — v1
"""Retry policy shared by every object-store and compute call.

A call is retried only when it fails with a rate-limit or server-side HTTP
status; anything else (auth, not-found, validation, local I/O) propagates
on the first attempt. Backoff is fixed, not exponential.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from imagebuilder.core.errors import TransientNetworkError

if TYPE_CHECKING:
    from imagebuilder.config.settings import Settings

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with a fixed delay between attempts."""

    max_attempts: int = 5
    backoff_s: float = 10.0
    retryable_statuses: frozenset[int] = RETRYABLE_STATUSES

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            backoff_s=settings.retry_backoff_secs,
        )


DEFAULT_RETRY_POLICY = RetryPolicy()


def http_status(error: BaseException) -> int | None:
    """HTTP status carried by an SDK error, if any.

    oci.exceptions.ServiceError exposes it as ``status``; botocore's
    ClientError keeps it in ``response["ResponseMetadata"]``.
    """
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        code = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if isinstance(code, int):
            return code
    return None


def is_retryable(error: BaseException, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> bool:
    return http_status(error) in policy.retryable_statuses


async def with_retry(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    operation: str = "request",
    policy: RetryPolicy | None = None,
    sleep: Sleep = asyncio.sleep,
    **kwargs: Any,
) -> Any:
    """Execute an async function under the retry policy.

    Raises:
        TransientNetworkError: If every attempt failed with a retryable status.
        Exception: The first non-retryable error, unchanged.
    """
    policy = policy or DEFAULT_RETRY_POLICY
    attempts = 0

    while True:
        try:
            return await fn(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e, policy):
                raise
            attempts += 1
            status = http_status(e)
            if attempts >= policy.max_attempts:
                raise TransientNetworkError(operation, attempts, status, e) from e

            logger.warning(
                "%s: HTTP %s (attempt %d/%d), retrying in %.1fs",
                operation, status, attempts, policy.max_attempts, policy.backoff_s,
            )
            await sleep(policy.backoff_s)
