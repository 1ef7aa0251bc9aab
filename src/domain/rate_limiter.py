"""
Per-sender sliding counter kept in the external key-value store.

The read-then-write in record_send is not atomic: concurrent messages from
the same sender can both read a stale count and under-count. That staleness
is accepted; this is a coarse abuse brake, not an exact quota.
"""

import json
import logging
import time
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600
THRESHOLD = 50


class RateLimiter:
    """
    Sliding-window send counter per sender address.

    The store is any object exposing ``get(key) -> Optional[bytes]`` and
    ``put(key, value, ttl_seconds)`` (services.kv_store in production).
    """

    def __init__(
        self,
        store: Any,
        window_seconds: int = WINDOW_SECONDS,
        threshold: int = THRESHOLD,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.window_seconds = window_seconds
        self.threshold = threshold
        self.clock = clock

    @staticmethod
    def _key(sender: str) -> str:
        return f"rate:{sender.lower()}"

    def _read(self, sender: str) -> Optional[Tuple[int, float]]:
        raw = self.store.get(self._key(sender))
        if not raw:
            return None
        data = json.loads(raw)
        return int(data['count']), float(data['window_start'])

    def should_reject(self, sender: str) -> bool:
        """
        Check whether the sender is over the limit in the current window.

        Store failures are logged and treated as "not limited".
        """
        try:
            record = self._read(sender)
        except Exception as e:
            logger.error(f"Rate limit check failed for {sender}: {e}")
            return False

        if record is None:
            return False

        count, window_start = record
        if self.clock() - window_start <= self.window_seconds:
            return count > self.threshold
        return False

    def record_send(self, sender: str) -> None:
        """
        Count one send for the sender, starting a new window if the old one expired.

        Store failures are logged and swallowed.
        """
        try:
            now = self.clock()
            record = self._read(sender)

            if record is None or now - record[1] > self.window_seconds:
                count, window_start = 1, now
            else:
                count, window_start = record[0] + 1, record[1]

            self.store.put(
                self._key(sender),
                json.dumps({'count': count, 'window_start': window_start}).encode('utf-8'),
                self.window_seconds
            )
        except Exception as e:
            logger.error(f"Rate limit update failed for {sender}: {e}")
