"""Exponential backoff with jitter for classified-retryable operations."""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from slurmlink.config import Settings, settings
from slurmlink.errors import ClusterError
from slurmlink.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Immutable retry configuration. Delays are in seconds."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    jitter_bound: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=30.0, ge=0)

    def delay_for(self, attempt: int, jitter: float = 0.0) -> float:
        """Delay before retrying after failed *attempt* (1-based)."""
        delay = self.base_delay * (2 ** (attempt - 1)) + jitter
        return min(delay, self.max_delay)


NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0, jitter_bound=0.0, max_delay=0.0)


def quick_policy(cfg: Settings | None = None) -> RetryPolicy:
    """For remote commands: fail fast."""
    cfg = cfg or settings
    return RetryPolicy(
        max_attempts=cfg.retry_quick_max_attempts,
        base_delay=cfg.retry_quick_base_delay,
        jitter_bound=cfg.retry_quick_base_delay * cfg.retry_jitter_ratio,
        max_delay=cfg.retry_quick_max_delay,
    )


def files_policy(cfg: Settings | None = None) -> RetryPolicy:
    """For file transfers: more patience."""
    cfg = cfg or settings
    return RetryPolicy(
        max_attempts=cfg.retry_files_max_attempts,
        base_delay=cfg.retry_files_base_delay,
        jitter_bound=cfg.retry_files_base_delay * cfg.retry_jitter_ratio,
        max_delay=cfg.retry_files_max_delay,
    )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await *operation* until it succeeds, fails non-retryably, or runs out of attempts.

    Only ``ClusterError`` instances with ``retryable`` set are retried. The last
    error is re-raised as-is so its classification survives.
    """
    attempt = 1
    while True:
        try:
            result = await operation()
        except ClusterError as exc:
            if not exc.retryable or attempt >= policy.max_attempts:
                if attempt > 1:
                    log.warning(
                        "retry.gave_up",
                        operation=name,
                        attempts=attempt,
                        error_code=exc.code,
                    )
                raise
            delay = policy.delay_for(attempt, random.uniform(0, policy.jitter_bound))
            log.info(
                "retry.scheduled",
                operation=name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error_code=exc.code,
            )
            await sleep(delay)
            attempt += 1
            continue
        if attempt > 1:
            log.info("retry.succeeded", operation=name, attempts=attempt)
        return result
