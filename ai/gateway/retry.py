"""Retry classification and backoff for a single provider attempt.

Classification is driven by an ordered table of ``(pattern, retryable)``
pairs matched against ``"<status> <message>"`` of the failure.  The first
matching pattern decides; an error matching nothing is fatal.
"""
import asyncio
import random
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from core.config import RetryPatternEntry
from core.errors import FatalRequestError, ProviderError, TransientProviderError

__all__ = [
    "DEFAULT_RETRY_PATTERNS",
    "RetryPolicy",
]

DEFAULT_RETRY_PATTERNS: Sequence[Tuple[str, bool]] = (
    # fatal
    (r"unauthori[sz]ed", False),
    (r"invalid api key", False),
    (r"api key is not configured", False),
    (r"forbidden", False),
    (r"quota exceeded|insufficient_quota", False),
    (r"model not found|model_not_found|does not exist", False),
    (r"unsupported", False),
    (r"bad request", False),
    # retryable
    (r"timeout|timed out", True),
    (r"network error", True),
    (r"connection", True),
    (r"rate limit", True),
    (r"too many requests", True),
    (r"server error", True),
    (r"\b5\d\d\b", True),
    (r"\b(408|429)\b", True),
    (r"capacity", True),
    (r"overloaded", True),
    (r"try again", True),
    (r"temporary|temporarily", True),
)


class RetryPolicy:
    """Decides whether a failed attempt is retried and how long to wait."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 1.0,
        patterns: Optional[Iterable[Tuple[str, bool]]] = None,
        rng: Optional[random.Random] = None,
        sleep=asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._patterns: List[Tuple[re.Pattern, bool]] = [
            (re.compile(p, re.IGNORECASE), retryable)
            for p, retryable in (patterns if patterns is not None else DEFAULT_RETRY_PATTERNS)
        ]
        self._rng = rng or random.Random()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, patterns: Optional[List[RetryPatternEntry]] = None) -> "RetryPolicy":
        """Build a policy from GatewaySettings (millisecond values)."""
        table = [(p.pattern, p.retryable) for p in patterns] if patterns else None
        return cls(
            max_retries=settings.AI_RETRY_ATTEMPTS,
            base_delay=settings.AI_RETRY_DELAY / 1000,
            max_delay=settings.AI_RETRY_MAX_DELAY / 1000,
            jitter=settings.AI_RETRY_JITTER / 1000,
            patterns=table,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, TransientProviderError):
            return True
        if isinstance(error, FatalRequestError):
            return False
        text = self._describe(error)
        for pattern, retryable in self._patterns:
            if pattern.search(text):
                return retryable
        return False

    def classify(self, error: BaseException) -> ProviderError:
        """Wrap ``error`` as a TransientProviderError or FatalRequestError."""
        if isinstance(error, (TransientProviderError, FatalRequestError)):
            return error
        status = getattr(error, "status_code", None)
        provider = getattr(error, "provider", None)
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        cls = TransientProviderError if self.is_retryable(error) else FatalRequestError
        return cls(message, status_code=status, provider=provider)

    def next_delay(self, attempt_index: int) -> float:
        """Backoff in seconds before retry number ``attempt_index + 1``."""
        backoff = min(self.max_delay, self.base_delay * (2 ** attempt_index))
        return backoff + (self._rng.uniform(0, self.jitter) if self.jitter > 0 else 0.0)

    async def wait(self, attempt_index: int) -> float:
        delay = self.next_delay(attempt_index)
        await self._sleep(delay)
        return delay

    @staticmethod
    def _describe(error: BaseException) -> str:
        status = getattr(error, "status_code", None)
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        return f"{status} {message}" if status is not None else message
