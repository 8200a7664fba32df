"""
polling.py - periodic full re-fetch while the live transport is down.

The engine follows the transport: DISCONNECTED or ERRORED starts polling
every watched data type, CONNECTED stops it again after a short grace
period and fetches everything once more to catch up. Results are handed to
the store as full replacements.
"""

import asyncio
import logging
from enum import Enum

from .reconciliation import DATA_TYPES
from .transport import ConnectionState, DOWN_STATES


logger = logging.getLogger(__name__)


class PollState(Enum):
    IDLE = "idle"
    POLLING = "polling"


class PollingFallbackEngine:
    def __init__(self, fetch, store, interval=5.0, max_interval=60.0, recovery_grace=2.0):
        self.fetch = fetch
        self.store = store
        self.interval = interval
        self.max_interval = max_interval
        self.recovery_grace = recovery_grace
        self._loops = {}
        self._intervals = {}
        self._failures = {}
        self._issued = {}
        self._applied = {}
        self._inflight = set()
        self._grace = None
        self._watched = ()

    @classmethod
    def from_settings(cls, fetch, store, settings):
        return cls(fetch, store,
                   interval=settings.poll_interval,
                   max_interval=settings.poll_max_interval,
                   recovery_grace=settings.recovery_grace)

    @property
    def state(self):
        return PollState.POLLING if self._loops else PollState.IDLE

    @property
    def is_polling(self):
        return bool(self._loops)

    @property
    def active_data_types(self):
        return sorted(self._loops)

    def consecutive_failures(self, data_type):
        return self._failures.get(data_type, 0)

    def start(self, data_type, interval=None):
        self._cancel_grace()
        task = self._loops.get(data_type)
        if task is not None and not task.done():
            return
        self._intervals[data_type] = interval or self.interval
        self._failures[data_type] = 0
        logger.info("Starting fallback polling for %s every %.1fs", data_type, self._intervals[data_type])
        self._loops[data_type] = asyncio.get_running_loop().create_task(self._run(data_type))

    def stop(self):
        self._cancel_grace()
        if self._loops:
            logger.info("Stopping fallback polling for %s", ", ".join(sorted(self._loops)))
        for task in list(self._loops.values()) + list(self._inflight):
            task.cancel()
        self._loops.clear()
        self._inflight.clear()

    def watch(self, transport, data_types=DATA_TYPES):
        """Drive start/stop from transport state. Returns an unbind function."""
        self._watched = tuple(data_types)

        def on_change(new_state, old_state):
            if new_state in DOWN_STATES:
                self._activate()
            elif new_state is ConnectionState.CONNECTED:
                self._recover()

        unbind = transport.on_connection_state_change(on_change)
        if transport.state in DOWN_STATES:
            self._activate()
        return unbind

    def _activate(self):
        self._cancel_grace()
        for data_type in self._watched:
            self.start(data_type)

    def _recover(self):
        if not self._loops:
            # Connected without a polling phase (first connect): fetch once
            # for whatever changed between the initial load and the subscription
            self.catch_up()
            return
        if self.recovery_grace <= 0:
            self._recovered()
            return
        self._cancel_grace()
        self._grace = asyncio.get_running_loop().call_later(self.recovery_grace, self._recovered)

    def _recovered(self):
        self._grace = None
        logger.info("Transport recovered, leaving fallback polling")
        self.stop()
        self.catch_up()

    def catch_up(self, data_types=None):
        """Run one full fetch per watched data type.

        Covers changes made after the last poll tick but before the live
        subscription was back in place.
        """
        for data_type in data_types or self._watched:
            self._spawn(data_type)

    def _cancel_grace(self):
        if self._grace is not None:
            self._grace.cancel()
            self._grace = None

    def _next_delay(self, data_type):
        base = self._intervals.get(data_type, self.interval)
        failures = self._failures.get(data_type, 0)
        if not failures:
            return base
        return min(base * (2 ** failures), max(self.max_interval, base))

    async def _run(self, data_type):
        while True:
            self._spawn(data_type)
            await asyncio.sleep(self._next_delay(data_type))

    def _spawn(self, data_type):
        # Each tick runs on its own so a slow fetch never holds up the next one
        seq = self._issued.get(data_type, 0) + 1
        self._issued[data_type] = seq
        task = asyncio.get_running_loop().create_task(self._tick(data_type, seq))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _tick(self, data_type, seq):
        try:
            items = await self.fetch(data_type)
        except Exception as exc:
            self._failures[data_type] = self._failures.get(data_type, 0) + 1
            logger.warning("Polling %s failed (%d in a row): %s",
                           data_type, self._failures[data_type], exc)
            return
        self._failures[data_type] = 0
        if seq < self._applied.get(data_type, 0):
            logger.debug("Dropping stale %s poll result #%d", data_type, seq)
            return
        self._applied[data_type] = seq
        self.store.apply_full_replace(data_type, items)
