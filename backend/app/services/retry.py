"""Retry with exponential backoff and explicit failure classification."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

import httpx
import structlog

from app.core.settings import Settings
from app.services.remote_clients import RemoteServiceError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class FailureKind(str, Enum):
    NETWORK = "network"
    NO_RESPONSE = "no_response"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {
        FailureKind.NETWORK,
        FailureKind.NO_RESPONSE,
        FailureKind.TIMEOUT,
        FailureKind.RATE_LIMITED,
        FailureKind.SERVER_ERROR,
    }
)


def classify_status(status_code: int) -> FailureKind:
    if status_code == 429:
        return FailureKind.RATE_LIMITED
    if status_code == 408:
        return FailureKind.TIMEOUT
    if status_code in RETRYABLE_STATUS_CODES:
        return FailureKind.SERVER_ERROR
    return FailureKind.CLIENT_ERROR


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, RemoteServiceError):
        if not exc.response_received:
            return FailureKind.NO_RESPONSE
        return classify_status(exc.status_code)
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return FailureKind.NETWORK
    return FailureKind.UNKNOWN


def is_retryable(kind: FailureKind) -> bool:
    return kind in RETRYABLE_KINDS


def backoff_delay(
    attempt: int,
    *,
    base_delay_s: float = 2.0,
    max_delay_s: float = 60.0,
    jitter_factor: float = 0.0,
) -> float:
    """Delay before retrying after ``attempt`` (1-indexed) failed.

    ``base * 2 ** (attempt - 1)`` capped at ``max_delay_s``, plus optional jitter.
    """
    delay = min(base_delay_s * (2 ** max(0, attempt - 1)), max_delay_s)
    if jitter_factor:
        delay += delay * jitter_factor * random.random()
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 2.0
    max_delay_s: float = 60.0
    jitter_factor: float = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_retries,
            base_delay_s=settings.retry_base_delay_s,
            max_delay_s=settings.retry_max_delay_s,
        )

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            base_delay_s=self.base_delay_s,
            max_delay_s=self.max_delay_s,
            jitter_factor=self.jitter_factor,
        )


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    operation: str,
    classify: Callable[[BaseException], FailureKind] = classify_failure,
    sleep: Callable[[float], None] = time.sleep,
    job_id: Optional[int] = None,
) -> T:
    """Call ``fn`` until it succeeds, fails permanently, or attempts run out.

    The last exception is re-raised unchanged.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as exc:
            kind = classify(exc)
            if not is_retryable(kind) or attempt >= policy.max_attempts:
                logger.error(
                    f"{operation}_failed",
                    job_id=job_id,
                    attempt=attempt,
                    failure_kind=kind.value,
                    error=str(exc),
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{operation}_retry",
                job_id=job_id,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                failure_kind=kind.value,
                delay_s=delay,
                error=str(exc),
            )
            sleep(delay)
            attempt += 1
