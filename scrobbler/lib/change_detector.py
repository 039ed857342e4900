"""
Change detector: turns a stream of snapshots into distinct plays.

A play is emitted when the track key differs from the last one seen on this
device AND the play log has no entry for the same key inside the
suppression window.  The log entry is written before the sink is called,
so a crash between the two loses a scrobble rather than doubling one.
"""

import logging
import time
from typing import Protocol

from scrobbler.lib.models import PlayRecord, TrackSnapshot
from scrobbler.lib.play_store import PlayStore

logger = logging.getLogger(__name__)

SUPPRESSION_WINDOW = 3600


class ScrobbleSink(Protocol):
    async def submit(self, artist: str | None, title: str | None,
                     album: str | None = None, timestamp: int | None = None) -> bool: ...


class ChangeDetector:
    """Per-device change detection over a shared play log."""

    def __init__(self, device_name: str, store: PlayStore, sink: ScrobbleSink, *,
                 window: int = SUPPRESSION_WINDOW, clock=time.time):
        self.device_name = device_name
        self.window = int(window)
        self._store = store
        self._sink = sink
        self._clock = clock
        self._last_key: str | None = None

    @property
    def last_key(self) -> str | None:
        return self._last_key

    async def observe(self, snapshot: TrackSnapshot) -> PlayRecord | None:
        """Feed one snapshot.  Returns the PlayRecord if it was a new play.

        PlayStoreError propagates and leaves ``last_key`` unchanged.
        """
        key = snapshot.key
        if key == self._last_key:
            return None

        now = int(self._clock())
        recorded = await self._store.record_if_new(self.device_name, key, now, self.window)
        self._last_key = key

        if not recorded:
            logger.info("[%s] Skipping duplicate track within %ds window: %s",
                        self.device_name, self.window, key)
            return None

        logger.info("[%s] New track: %s", self.device_name, key)
        record = PlayRecord(self.device_name, key, now)

        # Scrobble timestamps are the track start, not the moment we noticed it
        started = now - snapshot.position_seconds
        try:
            ok = await self._sink.submit(snapshot.artist, snapshot.title,
                                         album=snapshot.album, timestamp=started)
        except Exception as e:
            logger.error("[%s] Scrobble sink failed for %s: %s", self.device_name, key, e)
        else:
            if ok:
                logger.info("[%s] Scrobbled: %s", self.device_name, key)
        return record
