"""
Retry policy for failed deliveries.

Exponential backoff from a base delay, capped at a maximum, plus a
classification of error messages that no amount of retrying will fix.
"""

import logging
from datetime import timedelta
from typing import Optional, Sequence

logger = logging.getLogger("Ferry.Retry")

NON_RETRYABLE_ERRORS: Sequence[str] = (
    "file not found",
    "access denied",
    "authentication failed",
    "invalid blob name",
    "file too large",
)

FALLBACK_DELAY = timedelta(minutes=5)
FALLBACK_RETRY_ATTEMPTS = 3


class RetryPolicy:
    """
    Decide whether and when a failed delivery is attempted again.

    When a settings store is supplied, ``Upload.RetryDelaySeconds``,
    ``Upload.MaxRetryDelayMinutes`` and ``Upload.MaxRetries`` override the
    constructor defaults on every call, so operators can retune a running
    gateway.
    """

    def __init__(
        self,
        settings=None,
        *,
        base_delay: float = 30.0,
        max_delay: float = 900.0,
        max_retries: int = 5,
    ) -> None:
        self._settings = settings
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_retries = max_retries

    @property
    def max_retries(self) -> int:
        if self._settings is None:
            return self._max_retries
        return self._settings.get_or_default("Upload.MaxRetries", int, self._max_retries)

    def _base_delay_seconds(self) -> float:
        if self._settings is None:
            return self._base_delay
        return self._settings.get_or_default("Upload.RetryDelaySeconds", float, self._base_delay)

    def _max_delay_seconds(self) -> float:
        if self._settings is None:
            return self._max_delay
        minutes = self._settings.get_typed("Upload.MaxRetryDelayMinutes", float)
        return self._max_delay if minutes is None else minutes * 60.0

    def delay_for(self, attempt_count: int) -> timedelta:
        """``base * 2^(attempt-1)`` capped at the maximum delay."""
        try:
            base = self._base_delay_seconds()
            cap = self._max_delay_seconds()
            exponent = max(0, int(attempt_count) - 1)
            delay = min(base * (2 ** exponent), cap)
            return timedelta(seconds=max(0.0, delay))
        except Exception as exc:
            logger.error("Failed to compute retry delay for attempt %s: %s", attempt_count, exc)
            return FALLBACK_DELAY

    def should_retry(self, attempt_count: int, error: Optional[str] = None) -> bool:
        try:
            if attempt_count >= self.max_retries:
                return False
            if error:
                lowered = error.lower()
                for marker in NON_RETRYABLE_ERRORS:
                    if marker in lowered:
                        logger.info("Error classified as non-retryable (%s): %s", marker, error)
                        return False
            return True
        except Exception as exc:
            logger.error("Failed to evaluate retry policy for attempt %s: %s", attempt_count, exc)
            return attempt_count < FALLBACK_RETRY_ATTEMPTS
