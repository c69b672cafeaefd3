from __future__ import annotations

import asyncio
import enum
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)

JITTER_LOW = 0.75
JITTER_HIGH = 1.25


class MalformedRequestError(Exception):
    """Raised locally when a request cannot be built; never retried."""


class DeliveryOutcome(str, enum.Enum):
    DELIVERED = "delivered"
    REJECTED_BY_BACKEND = "rejected_by_backend"
    EXHAUSTED = "exhausted"
    DROPPED = "dropped"


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    timeout: float = 30.0

    def base_backoff(self, attempt: int) -> float:
        try:
            raw = self.base_delay * (self.multiplier**attempt)
        except OverflowError:
            raw = self.max_delay
        return min(raw, self.max_delay)

    def backoff(self, attempt: int, rng: random.Random | None = None) -> float:
        factor = (rng or random).uniform(JITTER_LOW, JITTER_HIGH)
        return self.base_backoff(attempt) * factor


class RetryCounter(Protocol):
    retry_count: int


@dataclass
class RetryState:
    retry_count: int = 0


@dataclass
class AttemptResult:
    outcome: DeliveryOutcome
    value: Any = None
    error: BaseException | None = None
    status_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is DeliveryOutcome.DELIVERED


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    if isinstance(exc, MalformedRequestError):
        return False
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return True
    retryable = getattr(exc, "retryable", None)
    if isinstance(retryable, bool):
        return retryable
    return False


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return getattr(exc, "status_code", None)


class RetryExecutor:
    """Runs one network operation with timeout, backoff and jitter.

    4xx responses and malformed requests fail immediately; 5xx, timeouts and
    transport errors are retried up to ``policy.max_retries`` times.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int) -> float:
        return self.policy.backoff(attempt, self._rng)

    async def attempt(
        self,
        operation: Callable[[], Awaitable[Any]],
        state: RetryCounter | None = None,
        *,
        on_retry: Callable[[int, float, BaseException], None] | None = None,
        label: str = "request",
    ) -> AttemptResult:
        counter: RetryCounter = state if state is not None else RetryState()
        while True:
            try:
                value = await asyncio.wait_for(operation(), timeout=self.policy.timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                status_code = _status_code(exc)
                if not is_retryable(exc):
                    logger.warning(
                        "request_rejected",
                        label=label,
                        status_code=status_code,
                        error=str(exc) or type(exc).__name__,
                    )
                    return AttemptResult(
                        DeliveryOutcome.REJECTED_BY_BACKEND,
                        error=exc,
                        status_code=status_code,
                    )
                if counter.retry_count >= self.policy.max_retries:
                    logger.error(
                        "request_exhausted",
                        label=label,
                        retries=counter.retry_count,
                        status_code=status_code,
                        error=str(exc) or type(exc).__name__,
                    )
                    return AttemptResult(
                        DeliveryOutcome.EXHAUSTED,
                        error=exc,
                        status_code=status_code,
                    )
                delay = self.compute_delay(counter.retry_count)
                counter.retry_count += 1
                logger.info(
                    "request_retrying",
                    label=label,
                    attempt=counter.retry_count,
                    delay_sec=round(delay, 3),
                    status_code=status_code,
                    error=str(exc) or type(exc).__name__,
                )
                if on_retry is not None:
                    on_retry(counter.retry_count, delay, exc)
                await self._sleep(delay)
                continue
            return AttemptResult(DeliveryOutcome.DELIVERED, value=value)
