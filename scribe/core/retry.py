"""Tenacity retry policies for upstream calls."""

import asyncio
from typing import Awaitable, Callable, TypeVar

import tenacity
from tenacity import RetryCallState, retry_if_exception_type

from scribe.core.errors import TransientUpstreamError
from scribe.core.logging import get_logger

logger = get_logger(__name__)

R = TypeVar("R")


def build_async_retrying(
    max_attempts: int,
    initial_wait: float,
    max_wait: float,
    label: str,
) -> tenacity.AsyncRetrying:
    """Build a Tenacity controller that retries TransientUpstreamError only.

    Args:
        max_attempts: Total attempts including the first call
        initial_wait: Multiplier of the randomized exponential backoff
        max_wait: Upper bound on a single sleep
        label: Operation name used in retry logs
    """
    return tenacity.AsyncRetrying(
        retry=retry_if_exception_type(TransientUpstreamError),
        stop=tenacity.stop_after_attempt(max(1, max_attempts)),
        wait=tenacity.wait_random_exponential(multiplier=initial_wait, max=max_wait),
        before_sleep=_before_sleep_hook(label),
        reraise=True,
    )


def _before_sleep_hook(label: str) -> Callable[[RetryCallState], None]:
    def _hook(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait_s = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Retrying {label} (attempt {retry_state.attempt_number}) in {wait_s:.2f}s: {exc}",
        )

    return _hook


async def with_timeout(awaitable: Awaitable[R], timeout: float, label: str) -> R:
    """Await with a deadline, converting expiry into TransientUpstreamError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientUpstreamError(f"{label} timed out after {timeout}s") from e
