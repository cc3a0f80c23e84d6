"""Retry policy for unary transport calls.

A RetryPolicy is immutable per call. It answers two questions for the
executor: may another attempt be made, and how long to wait first. Server
hints (``retry-after-ms``, then ``retry-after``) take precedence over the
computed exponential schedule.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Mapping
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Annotated

from pydantic import BaseModel, ConfigDict, Field, computed_field

from toolrelay.foundation.errors import RETRYABLE_CODES, ErrorCode

from .backoff import ExponentialBackoff

if TYPE_CHECKING:
    from toolrelay.foundation.config import RetrySettings

logger = logging.getLogger("toolrelay.retry")

RETRY_AFTER_MS = "retry-after-ms"
RETRY_AFTER = "retry-after"


class RetryPolicy(BaseModel):
    """Configurable retry policy for one logical call.

    Attributes:
        max_attempts: Total attempts including the first (1 = no retries)
        initial_delay: Delay in seconds before attempt 2
        backoff_multiplier: Growth factor applied per further attempt
        max_delay: Optional cap on computed delays (hints are not capped)

    Example:
        >>> policy = RetryPolicy(max_attempts=4, initial_delay=0.5, backoff_multiplier=3)
        >>> [policy.delay_for(n) for n in (1, 2, 3)]
        [0.5, 1.5, 4.5]
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_default=True,
        json_schema_extra={
            "title": "Retry Policy",
            "examples": [{"max_attempts": 3, "initial_delay": 2.0, "backoff_multiplier": 2.0}],
        },
    )

    max_attempts: Annotated[int, Field(ge=1, le=20)] = 3
    initial_delay: Annotated[float, Field(ge=0.0)] = 2.0
    backoff_multiplier: Annotated[float, Field(ge=1.0)] = 2.0
    max_delay: Annotated[float, Field(gt=0.0)] | None = None

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay=settings.initial_delay,
            backoff_multiplier=settings.backoff_multiplier,
        )

    @computed_field
    @property
    def is_disabled(self) -> bool:
        """Whether retries are effectively disabled."""
        return self.max_attempts == 1

    @property
    def backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            base=self.initial_delay,
            multiplier=self.backoff_multiplier,
            max_delay=self.max_delay if self.max_delay is not None else math.inf,
        )

    def should_retry(self, code: ErrorCode, attempt: int) -> bool:
        """Whether a failure with ``code`` on 1-indexed ``attempt`` earns another try."""
        return attempt < self.max_attempts and code in RETRYABLE_CODES

    def delay_for(self, attempt: int, hint: float | None = None) -> float:
        """Seconds to wait after failed 1-indexed ``attempt``; a server hint wins."""
        if hint is not None:
            return hint
        return self.backoff.delay(attempt - 1)


NO_RETRY = RetryPolicy(max_attempts=1, initial_delay=0.0)


def retry_hint(headers: Mapping[str, str]) -> float | None:
    """Extract the server's requested delay in seconds, if any.

    The millisecond variant wins over ``retry-after``. ``retry-after`` may be
    delta-seconds or an HTTP-date. Unparseable hints are ignored.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    if (ms := lowered.get(RETRY_AFTER_MS)) is not None:
        try:
            return max(0.0, float(ms) / 1000)
        except ValueError:
            logger.debug(f"Ignoring malformed {RETRY_AFTER_MS} header: {ms!r}")
    if (secs := lowered.get(RETRY_AFTER)) is not None:
        try:
            return max(0.0, float(secs))
        except ValueError:
            pass
        try:
            return max(0.0, parsedate_to_datetime(secs).timestamp() - time.time())
        except (TypeError, ValueError):
            logger.debug(f"Ignoring malformed {RETRY_AFTER} header: {secs!r}")
    return None
