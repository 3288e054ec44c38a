"""
PulseCheck - Idempotency Keys
Chat platforms retry event delivery. The first delivery of an event id
is processed; repeats inside the TTL are acknowledged and dropped.
In-process only: a second app instance keeps its own keys.
"""
import time
import logging
from typing import Callable

from pulsecheck.config import IDEMPOTENCY_TTL_SECONDS

logger = logging.getLogger(__name__)


class IdempotencyCache:
    def __init__(
        self,
        ttl_seconds: float = IDEMPOTENCY_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}

    def _purge(self, now: float) -> None:
        expired = [k for k, expires in self._seen.items() if expires <= now]
        for key in expired:
            del self._seen[key]

    def check_and_remember(self, key: str) -> bool:
        """True the first time a key is seen within the TTL, False for repeats."""
        now = self._clock()
        self._purge(now)
        if key in self._seen:
            logger.info(f"Duplicate delivery suppressed: {key}")
            return False
        self._seen[key] = now + self.ttl_seconds
        return True

    def forget(self, key: str) -> None:
        """Release a key whose processing failed, so a redelivery is handled."""
        self._seen.pop(key, None)

    def __len__(self) -> int:
        self._purge(self._clock())
        return len(self._seen)
