"""Bounded exponential backoff for transient I/O failures."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar


T = TypeVar("T")

logger = logging.getLogger("flow_backlog.retry")


def backoff_delay(attempt: int, *, base_delay_seconds: float, max_delay_seconds: float) -> float:
    return min(base_delay_seconds * (2 ** (attempt - 1)), max_delay_seconds)


def with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay_seconds: float = 0.2,
    max_delay_seconds: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Callable[[int, float, BaseException], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    if attempts <= 1:
        return func()
    last_exc: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            last_exc = exc
            if attempt >= attempts:
                break
            delay = backoff_delay(
                attempt,
                base_delay_seconds=base_delay_seconds,
                max_delay_seconds=max_delay_seconds,
            )
            if on_retry:
                on_retry(attempt, delay, exc)
            else:
                logger.warning("Retrying after attempt %s failed (%s); sleeping %.2fs", attempt, exc, delay)
            sleep(delay)
    if last_exc is None:
        raise RuntimeError("RETRY_FAILED")
    raise last_exc
