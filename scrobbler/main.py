#!/usr/bin/env python3
"""
Sonos scrobbler: watch Sonos players and scrobble what they play to Last.fm.

    sonos-scrobbler                      # first player found
    sonos-scrobbler --room Kitchen --room "Living Room"
    sonos-scrobbler --all --dry-run -v
    sonos-scrobbler --show-last          # last logged play per room, then exit

Tuning lives in config.json (see scrobbler.lib.config); Last.fm credentials
in the environment or a .env file.
"""

import argparse
import asyncio
import datetime
import logging
import os
import sys

import pylast

from scrobbler.lib import discovery
from scrobbler.lib.change_detector import SUPPRESSION_WINDOW, ChangeDetector
from scrobbler.lib.config import cfg, load_env
from scrobbler.lib.connection import ConnectionManager
from scrobbler.lib.lastfm import LastFmCredentials, LastFmSink, LoggingSink, MissingCredentials
from scrobbler.lib.models import DeviceDescriptor, DeviceHandle
from scrobbler.lib.play_store import DEFAULT_DATABASE, PlayStore, PlayStoreError
from scrobbler.lib.poll_loop import DeviceLost, PollLoop
from scrobbler.lib.service_base import ServiceBase
from scrobbler.lib.watchdog import notify_status
from scrobbler.players.base import DeviceError
from scrobbler.players.sonos import PROBE_TIMEOUT, REQUEST_TIMEOUT, SONOS_PORT, SonosSession

logger = logging.getLogger("scrobbler")

# Grace period for in-flight ticks on shutdown
SHUTDOWN_TIMEOUT = 20.0


class ScrobblerService(ServiceBase):
    name = "Sonos scrobbler"

    def __init__(self, store: PlayStore, sink, rooms: list[str] | None = None):
        super().__init__()
        self.store = store
        self.sink = sink
        self.rooms = rooms if rooms is not None else cfg("player", "rooms", default=[])

        self.port = int(cfg("player", "port", default=SONOS_PORT))
        self.probe_timeout = float(cfg("player", "probe_timeout", default=PROBE_TIMEOUT))
        self.request_timeout = float(cfg("player", "request_timeout", default=REQUEST_TIMEOUT))

        self.poll_interval = float(cfg("monitor", "poll_interval", default=5))
        self.max_retries = int(cfg("monitor", "max_retries", default=5))
        self.retry_delay = float(cfg("monitor", "retry_delay", default=5))
        self.backoff_factor = float(cfg("monitor", "backoff_factor", default=1.0))
        self.max_retry_delay = float(cfg("monitor", "max_retry_delay", default=60))
        self.restart_delay = float(cfg("monitor", "restart_delay", default=0))

        self.search_timeout = float(cfg("discovery", "search_timeout", default=5))
        self.response_timeout = float(cfg("discovery", "response_timeout", default=5))
        self.rediscover_search_timeout = float(
            cfg("discovery", "rediscover_search_timeout", default=30))
        self.rediscover_response_timeout = float(
            cfg("discovery", "rediscover_response_timeout", default=10))
        self.startup_attempts = int(cfg("discovery", "startup_attempts", default=3))
        self.startup_retry_delay = float(cfg("discovery", "startup_retry_delay", default=10))

        self.window = int(cfg("dedup", "window", default=SUPPRESSION_WINDOW))

        self.exit_code = 0
        self._monitors: list[asyncio.Task] = []
        self._supervisor: asyncio.Task | None = None

    def session_factory(self, address: str) -> SonosSession:
        return SonosSession(address, self.http, port=self.port,
                            probe_timeout=self.probe_timeout,
                            request_timeout=self.request_timeout)

    async def on_start(self):
        await self.store.open()
        devices = await discovery.discover_with_retry(
            self.stop_event,
            attempts=self.startup_attempts,
            retry_delay=self.startup_retry_delay,
            search_timeout=self.search_timeout,
            response_timeout=self.response_timeout,
        )
        selected = discovery.select_devices(devices, self.rooms)
        if not selected:
            if devices and self.rooms:
                logger.error("None of the requested rooms were found: %s (available: %s)",
                             ", ".join(self.rooms),
                             ", ".join(d.display_name for d in devices))
            else:
                logger.error("No Sonos devices found. Is a player on this network?")
            self.exit_code = 1
            self.request_stop()
            return

        for device in selected:
            self._monitors.append(asyncio.create_task(
                self.monitor(device), name=f"monitor-{device.display_name}"))
        self._supervisor = asyncio.create_task(self._supervise())
        notify_status("Monitoring " + ", ".join(d.display_name for d in selected))

    async def _supervise(self):
        """Stop the service once every monitor has ended."""
        results = await asyncio.gather(*self._monitors, return_exceptions=True)
        for task, result in zip(self._monitors, results):
            if isinstance(result, Exception):
                logger.error("%s crashed: %s", task.get_name(), result, exc_info=result)
        if not self.stop_event.is_set():
            logger.error("No devices left to monitor")
            self.exit_code = 1
            self.request_stop()

    async def monitor(self, device: DeviceDescriptor):
        """Monitor one device; optionally start a fresh session after a loss."""
        handle = DeviceHandle(device.address, device.display_name)
        while not self.stop_event.is_set():
            manager = ConnectionManager(
                handle, self.session_factory, discovery.discover,
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                backoff_factor=self.backoff_factor,
                max_retry_delay=self.max_retry_delay,
                rediscover_search_timeout=self.rediscover_search_timeout,
                rediscover_response_timeout=self.rediscover_response_timeout,
                stop_event=self.stop_event,
            )
            detector = ChangeDetector(handle.display_name, self.store, self.sink,
                                      window=self.window)
            loop = PollLoop(manager, detector, interval=self.poll_interval,
                            fetch_timeout=self.probe_timeout + self.request_timeout,
                            stop_event=self.stop_event)
            try:
                await manager.connect()
                await loop.run()
                return
            except DeviceError:
                pass  # already logged by the manager
            except DeviceLost as e:
                logger.error("%s", e)
            finally:
                await manager.close()

            if self.restart_delay <= 0:
                return
            logger.info("Restarting monitoring of %s in %.0fs",
                        handle.display_name, self.restart_delay)
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.restart_delay)
            except asyncio.TimeoutError:
                pass

    async def on_stop(self):
        if self._monitors:
            _, pending = await asyncio.wait(self._monitors, timeout=SHUTDOWN_TIMEOUT)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if self._supervisor:
            await self._supervisor
        await self.store.close()


async def show_last(store: PlayStore, rooms: list[str] | None) -> int:
    """Print the most recent logged play for each discovered room."""
    await store.open()
    try:
        devices = await discovery.discover_with_retry(
            asyncio.Event(),
            attempts=1,
            search_timeout=float(cfg("discovery", "search_timeout", default=5)),
            response_timeout=float(cfg("discovery", "response_timeout", default=5)),
        )
        selected = discovery.select_devices(devices, rooms or [discovery.ALL_ROOMS])
        if not selected:
            print("No Sonos devices found")
            return 1
        for device in selected:
            play = await store.last_play(device.display_name)
            if play is None:
                print(f"{device.display_name}: nothing logged yet")
            else:
                print(f"{device.display_name}: {play.track_key} "
                      f"({_format_time(play.played_at)})")
        return 0
    finally:
        await store.close()


def _format_time(epoch: int) -> str:
    return datetime.datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="sonos-scrobbler",
        description="Scrobble what your Sonos players are playing to Last.fm")
    parser.add_argument("--room", action="append", dest="rooms", metavar="NAME",
                        help="Room to monitor (repeatable; default: first player found)")
    parser.add_argument("--all", action="store_true",
                        help="Monitor every player on the network")
    parser.add_argument("--dry-run", action="store_true",
                        help="Log plays instead of scrobbling them")
    parser.add_argument("--database", metavar="PATH",
                        help=f"Play log location (default: {DEFAULT_DATABASE})")
    parser.add_argument("--config", metavar="PATH",
                        help="JSON config file")
    parser.add_argument("--show-last", action="store_true",
                        help="Print the last logged play per room and exit")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    return parser.parse_args(argv)


def setup_logging(verbose: bool = False):
    level = "DEBUG" if verbose else os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # soco logs every SSDP packet at debug
    logging.getLogger("soco").setLevel(logging.WARNING)


async def run(args) -> int:
    database = args.database or cfg("dedup", "database", default=DEFAULT_DATABASE)
    store = PlayStore(database)
    rooms = [discovery.ALL_ROOMS] if args.all else args.rooms

    if args.show_last:
        return await show_last(store, rooms)

    if args.dry_run:
        logger.info("Dry run: plays will be logged, not scrobbled")
        sink = LoggingSink()
    else:
        try:
            credentials = LastFmCredentials.from_env()
        except MissingCredentials as e:
            logger.error("%s (set them in the environment or .env, or use --dry-run)", e)
            return 2
        try:
            sink = await LastFmSink.connect(credentials)
        except (pylast.PyLastError, OSError) as e:
            logger.error("Last.fm login failed for %s: %s", credentials.username, e)
            return 2

    service = ScrobblerService(store, sink, rooms=rooms)
    try:
        await service.run()
    except PlayStoreError as e:
        logger.error("%s", e)
        return 1
    return service.exit_code


def main(argv=None):
    args = parse_args(argv)
    if args.config:
        os.environ["SCROBBLER_CONFIG"] = args.config
    setup_logging(args.verbose)
    load_env()
    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
