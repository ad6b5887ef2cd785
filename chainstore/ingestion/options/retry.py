from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from chainstore.errors import LockContention, RetriesExhausted, classify_db_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 100
DEFAULT_JITTER_MS = 100


class RetryController:
    """Re-run a whole unit of work when the database reports lock contention.

    The unit of work must be restartable from scratch: a failed attempt's
    transaction has already been rolled back when the next one starts.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        jitter_ms: int = DEFAULT_JITTER_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.jitter_ms = jitter_ms
        self._sleep = sleep
        self._rand = rand

    def delay_ms(self, attempt_index: int) -> float:
        """Backoff after the failed attempt with 0-based ``attempt_index``."""
        return self.base_delay_ms * (2**attempt_index) + self._rand(0, self.jitter_ms)

    async def run_with_retry(
        self,
        unit_of_work: Callable[[], Awaitable[T]],
        *,
        context: dict[str, Any] | None = None,
    ) -> tuple[T, int]:
        """Return the unit of work's result and the number of attempts it took."""
        log_context = dict(context or {})
        for attempt_index in range(self.max_attempts):
            try:
                return await unit_of_work(), attempt_index + 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                classified = classify_db_error(exc)
                if not isinstance(classified, LockContention):
                    raise
                if classified is not exc:
                    classified.__cause__ = exc

                attempts = attempt_index + 1
                if attempts >= self.max_attempts:
                    logger.error(
                        "Lock contention retries exhausted",
                        extra={
                            "stage": "retry",
                            **log_context,
                            "attempts": attempts,
                            "root_cause": getattr(classified, "pgcode", None) or type(exc).__name__,
                            "error": str(exc),
                        },
                    )
                    raise RetriesExhausted(
                        f"Gave up after {attempts} attempts: {exc}",
                        attempts=attempts,
                        last_error=classified,
                    ) from classified

                delay = self.delay_ms(attempt_index)
                logger.warning(
                    "Lock contention, retrying unit of work",
                    extra={
                        "stage": "retry",
                        **log_context,
                        "attempt": attempts,
                        "max_attempts": self.max_attempts,
                        "delay_ms": round(delay, 3),
                        "error": str(exc),
                    },
                )
                await self._sleep(delay / 1000.0)

        raise AssertionError("unreachable")  # pragma: no cover
