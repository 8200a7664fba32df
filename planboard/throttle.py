"""
throttle.py - per-order minimum interval between applied updates.
"""

import logging
import time

from .events import EventKind


logger = logging.getLogger(__name__)

# Field edits arrive in bursts; notifications and priority changes are
# deliberate user actions and always pass.
THROTTLED_KINDS = frozenset({EventKind.ORDER_UPDATED})


def applies_to(kind):
    return kind in THROTTLED_KINDS


class ThrottleGate:
    def __init__(self, min_interval=3.0, clock=time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self.last_accepted_at = {}

    def allow(self, entity_id, now=None):
        now = self._clock() if now is None else now
        last = self.last_accepted_at.get(entity_id)
        if last is not None and now - last < self.min_interval:
            logger.debug("Throttled update for %s (%.2fs since last)", entity_id, now - last)
            return False
        self.last_accepted_at[entity_id] = now
        return True

    def forget(self, entity_id):
        self.last_accepted_at.pop(entity_id, None)

    def sweep(self, now=None):
        now = self._clock() if now is None else now
        stale = [k for k, ts in self.last_accepted_at.items() if now - ts >= self.min_interval]
        for k in stale:
            del self.last_accepted_at[k]
        return len(stale)

    def clear(self):
        self.last_accepted_at.clear()
