"""Deadline and retry wrapper for collaborator calls."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import CollaboratorsConfig
from .errors import CollaboratorError, CreditGuardError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    timeout: float = 10.0
    max_attempts: int = 3
    backoff_min: float = 0.5
    backoff_max: float = 10.0

    @classmethod
    def from_config(cls, cfg: CollaboratorsConfig) -> RetryPolicy:
        return cls(
            timeout=cfg.timeout_seconds,
            max_attempts=cfg.max_attempts,
            backoff_min=cfg.backoff_min_seconds,
            backoff_max=cfg.backoff_max_seconds,
        )


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, CollaboratorError):
        return exc.retryable
    # Validation/policy errors reported by a collaborator will not change on retry.
    if isinstance(exc, CreditGuardError):
        return False
    return isinstance(exc, Exception)


async def call_collaborator(
    name: str,
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
) -> T:
    """Await ``fn()`` under a deadline, retrying with exponential backoff.

    Raises:
        CollaboratorError: after the retry budget is exhausted or on a
            non-retryable failure.
    """
    policy = policy or RetryPolicy()
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(
                multiplier=1, min=policy.backoff_min, max=policy.backoff_max
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                result = await asyncio.wait_for(fn(), timeout=policy.timeout)
    except CreditGuardError:
        raise
    except asyncio.TimeoutError as exc:
        raise CollaboratorError(name, f"timed out after {policy.timeout:g}s") from exc
    except Exception as exc:
        raise CollaboratorError(name, str(exc) or type(exc).__name__) from exc
    return result
