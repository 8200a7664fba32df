"""
suppression.py - time-windowed duplicate suppression for change events.

The same logical change can reach a client up to three times: in the
response to its own write, as the channel broadcast and in a polling pass.
SuppressionFilter remembers event ids and content fingerprints for a TTL and
lets each change through once.
"""

import heapq
import logging
import time


logger = logging.getLogger(__name__)


class ExpiringSet:
    """Set whose members expire `ttl` seconds after they were added.

    Expiry times are kept in a min-heap so sweep() only touches what has
    actually expired. Re-adding a key pushes a new heap entry; the stale one
    is skipped when it surfaces.
    """

    def __init__(self, ttl, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._expiry = {}
        self._heap = []

    def add(self, key, now=None):
        now = self._clock() if now is None else now
        expires = now + self.ttl
        self._expiry[key] = expires
        heapq.heappush(self._heap, (expires, key))

    def contains(self, key, now=None):
        expires = self._expiry.get(key)
        if expires is None:
            return False
        now = self._clock() if now is None else now
        return expires > now

    def __contains__(self, key):
        return self.contains(key)

    def sweep(self, now=None):
        now = self._clock() if now is None else now
        removed = 0
        while self._heap and self._heap[0][0] <= now:
            expires, key = heapq.heappop(self._heap)
            if self._expiry.get(key) == expires:
                del self._expiry[key]
                removed += 1
        return removed

    def clear(self):
        self._expiry.clear()
        self._heap.clear()

    def __len__(self):
        return len(self._expiry)


class SuppressionFilter:
    def __init__(self, ttl=60.0, bucket_seconds=60, payload_chars=200, clock=time.monotonic):
        self.bucket_seconds = bucket_seconds
        self.payload_chars = payload_chars
        self._clock = clock
        self.seen_ids = ExpiringSet(ttl, clock)
        self.seen_fingerprints = ExpiringSet(ttl, clock)
        self._dropped = 0

    @classmethod
    def from_settings(cls, settings, clock=time.monotonic):
        return cls(ttl=settings.dedup_ttl,
                   bucket_seconds=settings.fingerprint_bucket,
                   payload_chars=settings.fingerprint_payload_chars,
                   clock=clock)

    def should_process(self, event):
        """Return True the first time a change is seen, False for repeats.

        Marks the event as seen on acceptance. Check and mark happen without
        yielding so two deliveries of one change cannot both pass.
        """
        now = self._clock()
        key = event.dedup_key
        if self.seen_ids.contains(key, now):
            self._dropped += 1
            logger.debug("Duplicate event id %s (%s)", key, event.kind.value)
            return False

        fp = event.fingerprint(self.bucket_seconds, self.payload_chars)
        if self.seen_fingerprints.contains(fp, now):
            self._dropped += 1
            logger.debug("Duplicate event content for %s (%s)", event.entity_id, event.kind.value)
            return False

        self.seen_ids.add(key, now)
        self.seen_fingerprints.add(fp, now)
        return True

    def sweep(self, now=None):
        now = self._clock() if now is None else now
        return self.seen_ids.sweep(now) + self.seen_fingerprints.sweep(now)

    def clear(self):
        self.seen_ids.clear()
        self.seen_fingerprints.clear()

    @property
    def stats(self):
        return {
            "tracked_ids": len(self.seen_ids),
            "tracked_fingerprints": len(self.seen_fingerprints),
            "dropped": self._dropped,
        }
