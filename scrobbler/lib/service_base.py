# Sonos Scrobbler
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
ServiceBase — process lifecycle shared by long-running scrobbler services.

Owns the things every service needs exactly once: the aiohttp session used
for device HTTP, the stop event that is the only cancellation signal inside
the core, SIGINT/SIGTERM handling and the systemd watchdog heartbeat.

Subclass contract:

    class MyService(ServiceBase):
        name = "scrobbler"

        async def on_start(self): ...   # session + stop_event ready
        async def on_stop(self): ...    # before the HTTP session closes
"""

import asyncio
import logging
import signal

import aiohttp

from .watchdog import notify_status, watchdog_loop

log = logging.getLogger(__name__)


class ServiceBase:
    name: str = ""

    def __init__(self, *, watchdog_interval: float = 20):
        self.running: bool = False
        self.stop_event = asyncio.Event()
        self.watchdog_interval = watchdog_interval
        self._http_session: aiohttp.ClientSession | None = None
        self._watchdog_task: asyncio.Task | None = None

    @property
    def http(self) -> aiohttp.ClientSession:
        if self._http_session is None:
            raise RuntimeError(f"{self.name or type(self).__name__} is not started")
        return self._http_session

    # ── Optional overrides ──

    async def on_start(self):
        pass

    async def on_stop(self):
        pass

    # ── Lifecycle ──

    async def start(self):
        self.running = True
        self._http_session = aiohttp.ClientSession()
        await self.on_start()

        # Start systemd watchdog heartbeat (after on_start so subclass is ready)
        self._watchdog_task = asyncio.create_task(
            watchdog_loop(self.stop_event, self.watchdog_interval))
        notify_status(f"{self.name or 'service'} running")

    def request_stop(self):
        if not self.stop_event.is_set():
            log.info("Shutdown requested")
        self.stop_event.set()

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)
        try:
            await self.start()
            await self.stop_event.wait()
        finally:
            await self.shutdown()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

    async def shutdown(self):
        """Clean up resources."""
        self.running = False
        self.stop_event.set()
        await self.on_stop()

        if self._watchdog_task:
            await self._watchdog_task
            self._watchdog_task = None

        # Close HTTP session
        if self._http_session:
            await self._http_session.close()
            self._http_session = None
        log.info("%s stopped", self.name or "Service")
