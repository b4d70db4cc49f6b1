"""Shared plumbing for calling external capabilities from a stage."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import ExternalServiceError, StageError, StageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_capability(
    func: Callable[..., T],
    *args: Any,
    stage: str,
    timeout: float | None = 60.0,
    max_retries: int = 0,
    **kwargs: Any,
) -> T:
    """Run a blocking provider call in a thread with a timeout.

    Timeouts become StageTimeoutError, other provider exceptions become
    ExternalServiceError. Both are retried with exponential backoff when
    ``max_retries`` is positive. StageErrors raised by the callable pass
    through unchanged and are never retried.
    """

    async def _attempt() -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise StageTimeoutError(f"{stage} timed out after {timeout}s", stage=stage, original_error=e) from e
        except StageError:
            raise
        except Exception as e:
            raise ExternalServiceError(f"{type(e).__name__}: {e}", stage=stage, original_error=e) from e

    return await with_retries(_attempt, stage=stage, max_retries=max_retries)


async def with_retries(
    attempt: Callable[[], Awaitable[T]],
    stage: str,
    max_retries: int = 0,
) -> T:
    if max_retries <= 0:
        return await attempt()

    def _log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            "Retrying %s after attempt %d failed: %s",
            stage,
            retry_state.attempt_number,
            retry_state.outcome.exception() if retry_state.outcome else None,
        )

    async for attempt_manager in AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
        retry=retry_if_exception_type((StageTimeoutError, ExternalServiceError)),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt_manager:
            return await attempt()

    raise AssertionError("unreachable")


def clean_extracted_text(text: str) -> str:
    """Normalize whitespace in extracted text."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


def truncate_text(text: str, max_length: int) -> str:
    if max_length and len(text) > max_length:
        return text[:max_length]
    return text
