"""
Per-device poll loop.

Each tick: health check, fetch the current track, hand the snapshot to
the change detector.  Ticks never overlap; a failed tick is logged and the
loop carries on at the next interval.  The loop only ends when the stop
event is set or the connection manager has spent its retry budget.
"""

import asyncio
import logging

from scrobbler.lib.change_detector import ChangeDetector
from scrobbler.lib.connection import ConnectionManager
from scrobbler.lib.models import PlayRecord
from scrobbler.lib.play_store import PlayStoreError
from scrobbler.players.base import DeviceError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 5.0
FETCH_TIMEOUT = 15.0


class DeviceLost(Exception):
    """The device stayed unreachable for longer than the retry budget allows."""

    def __init__(self, name: str, address: str):
        super().__init__(f"Lost connection to {name} ({address})")
        self.name = name
        self.address = address


class PollLoop:
    def __init__(self, manager: ConnectionManager, detector: ChangeDetector, *,
                 interval: float = POLL_INTERVAL,
                 fetch_timeout: float = FETCH_TIMEOUT,
                 stop_event: asyncio.Event | None = None):
        self.manager = manager
        self.detector = detector
        self.interval = interval
        self.fetch_timeout = fetch_timeout
        self.stop_event = stop_event or asyncio.Event()

    async def tick(self) -> PlayRecord | None:
        """Run one poll.  Raises DeviceLost once the retry budget is spent."""
        if not await self.manager.check_health():
            if self.manager.exhausted:
                raise DeviceLost(self.manager.name, self.manager.address)
            return None

        session = self.manager.session
        if session is None:
            return None

        try:
            snapshot = await asyncio.wait_for(
                session.fetch_current_track(), timeout=self.fetch_timeout)
        except asyncio.TimeoutError:
            logger.warning("[%s] Track fetch timed out after %.0fs",
                           self.manager.name, self.fetch_timeout)
            return None
        except DeviceError as e:
            logger.warning("[%s] Error getting track info: %s", self.manager.name, e)
            return None

        logger.debug("[%s] Now playing: %s (%s / %s)", self.manager.name,
                     snapshot.key, snapshot.position or "-", snapshot.duration or "-")
        try:
            return await self.detector.observe(snapshot)
        except PlayStoreError as e:
            logger.error("[%s] Play log error: %s", self.manager.name, e)
            return None

    async def run(self) -> None:
        logger.info("Monitoring %s at %s every %.0fs",
                    self.manager.name, self.manager.address, self.interval)
        loop = asyncio.get_running_loop()
        while not self.stop_event.is_set():
            started = loop.time()
            await self.tick()
            remaining = max(self.interval - (loop.time() - started), 0)
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
        logger.info("Stopped monitoring %s", self.manager.name)
