from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from salesmap_news.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_quota_error(error: BaseException | None) -> bool:
    if error is None:
        return False

    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    try:
        if status is not None and int(status) == 429:
            return True
    except (TypeError, ValueError):
        pass

    message = str(error).lower()
    return "quota" in message or "rate limit" in message


@dataclass
class PacingWatermark:
    """Time of the last provider call, shared by every limiter that paces together."""

    last_invocation: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class RateLimiter:
    def __init__(
        self,
        *,
        interval_ms: int = 500,
        max_retries: int = 3,
        backoff_ms: int = 15000,
        jitter_ms: int = 250,
        watermark: PacingWatermark | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ):
        self.interval_ms = max(0, interval_ms)
        self.max_retries = max(0, max_retries)
        self.backoff_ms = max(0, backoff_ms)
        self.jitter_ms = max(0, jitter_ms)
        self.watermark = watermark or PacingWatermark()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings, watermark: PacingWatermark | None = None) -> RateLimiter:
        return cls(
            interval_ms=settings.news_request_interval_ms,
            max_retries=settings.news_request_max_retries,
            backoff_ms=settings.news_request_backoff_ms,
            jitter_ms=settings.news_request_jitter_ms,
            watermark=watermark,
        )

    def _with_jitter(self, delay_ms: float) -> float:
        if self.jitter_ms <= 0:
            return delay_ms
        sign = -1 if self._rng.random() < 0.5 else 1
        return max(0.0, delay_ms + sign * self._rng.random() * self.jitter_ms)

    def _wait_for_interval(self) -> None:
        elapsed_ms = (self._clock() - self.watermark.last_invocation) * 1000
        remaining_ms = self.interval_ms - elapsed_ms
        if remaining_ms > 0:
            self._sleep(self._with_jitter(remaining_ms) / 1000)

    def run(self, task: Callable[[], T]) -> T:
        attempt = 0
        while True:
            with self.watermark.lock:
                self._wait_for_interval()
                try:
                    return task()
                except Exception as exc:
                    if attempt >= self.max_retries or not is_quota_error(exc):
                        raise
                    delay_ms = self._with_jitter(self.backoff_ms * (2**attempt))
                    logger.warning(
                        "Search provider throttled; backing off",
                        extra={"attempt": attempt + 1, "delay_ms": round(delay_ms), "error": str(exc)},
                    )
                finally:
                    self.watermark.last_invocation = self._clock()

            self._sleep(delay_ms / 1000)
            attempt += 1
