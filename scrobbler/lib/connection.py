"""
Connectivity manager: owns one device's session lifecycle.

States and the only transitions between them:

    DISCONNECTED ──probe ok──▶ CONNECTED ──probe fails──▶ RECONNECTING
         ▲                         ▲                          │
         └──── budget exhausted ───┼──────────────────────────┤
                                   └──────── probe ok ────────┘

While RECONNECTING every failed probe costs one retry and triggers a
rediscovery with widened timeouts; if the device turns up under the same
room name at a new address the session is rebound there.  Once the budget
is spent the manager drops to DISCONNECTED and stays there until a probe
succeeds again (or the caller starts a fresh session).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from scrobbler.lib.discovery import DiscoveryError
from scrobbler.lib.models import ConnectionState, DeviceDescriptor, DeviceHandle, RetryBudget
from scrobbler.players.base import DeviceError, DeviceSession

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
RETRY_DELAY = 5.0
MAX_RETRY_DELAY = 60.0
REDISCOVER_SEARCH_TIMEOUT = 30.0
REDISCOVER_RESPONSE_TIMEOUT = 10.0

SessionFactory = Callable[[str], DeviceSession]
DiscoverFunc = Callable[[float, float], Awaitable[list[DeviceDescriptor]]]


class ConnectionManager:
    """Connect, health-check and recover one device.

    ``connect()`` is the only call that raises; everything after that is
    reported through the boolean result of ``check_health()``.
    """

    def __init__(self, handle: DeviceHandle,
                 session_factory: SessionFactory,
                 discover: DiscoverFunc, *,
                 max_retries: int = MAX_RETRIES,
                 retry_delay: float = RETRY_DELAY,
                 backoff_factor: float = 1.0,
                 max_retry_delay: float = MAX_RETRY_DELAY,
                 rediscover_search_timeout: float = REDISCOVER_SEARCH_TIMEOUT,
                 rediscover_response_timeout: float = REDISCOVER_RESPONSE_TIMEOUT,
                 stop_event: asyncio.Event | None = None):
        self.handle = handle
        self.budget = RetryBudget(max_retries)
        self.retry_delay = retry_delay
        self.backoff_factor = backoff_factor
        self.max_retry_delay = max_retry_delay
        self.rediscover_search_timeout = rediscover_search_timeout
        self.rediscover_response_timeout = rediscover_response_timeout
        self._session_factory = session_factory
        self._discover = discover
        self._stop_event = stop_event or asyncio.Event()
        self._state = ConnectionState.DISCONNECTED
        self._session: DeviceSession | None = None

    @property
    def name(self) -> str:
        return self.handle.display_name

    @property
    def address(self) -> str:
        return self.handle.address

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_count(self) -> int:
        return self.budget.count

    @property
    def exhausted(self) -> bool:
        return self.budget.exhausted

    @property
    def session(self) -> DeviceSession | None:
        return self._session

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug("[%s] %s -> %s", self.name, self._state.value, state.value)
        self._state = state

    async def _bind(self, address: str) -> DeviceSession:
        """Return a session for *address*, replacing one bound elsewhere."""
        if self._session is not None:
            if self._session.address == address:
                return self._session
            await self._session.close()
        self._session = self._session_factory(address)
        return self._session

    async def _probe(self) -> None:
        session = await self._bind(self.handle.address)
        await session.probe()

    async def connect(self) -> None:
        """Establish the session with one probe.  Raises on failure."""
        logger.info("Connecting to device %s at %s", self.name, self.address)
        try:
            await self._probe()
        except DeviceError as e:
            logger.error("Failed to establish initial connection to %s: %s", self.name, e)
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        logger.info("Successfully connected to device %s", self.name)
        self._set_state(ConnectionState.CONNECTED)
        self.budget.reset()

    async def check_health(self) -> bool:
        """Probe once.  True means the caller may carry on with this tick."""
        try:
            await self._probe()
        except DeviceError as e:
            if self._state is ConnectionState.DISCONNECTED:
                logger.debug("Device %s still unreachable: %s", self.name, e)
                return False
            logger.warning("Connection check failed for %s: %s", self.name, e)
            return await self.handle_failure()

        if self._state is not ConnectionState.CONNECTED:
            logger.info("Device %s is now connected at %s", self.name, self.address)
            self._set_state(ConnectionState.CONNECTED)
        self.budget.reset()
        return True

    def backoff_delay(self, attempt: int) -> float:
        delay = self.retry_delay * self.backoff_factor ** max(attempt - 1, 0)
        return min(delay, self.max_retry_delay)

    async def handle_failure(self) -> bool:
        """Spend one retry: rediscover, rebind if the device moved, or back off."""
        self._set_state(ConnectionState.RECONNECTING)
        attempt = self.budget.consume()

        if self.budget.exhausted:
            self._log_checklist()
            self._set_state(ConnectionState.DISCONNECTED)
            return False

        logger.warning("Attempting to reconnect to %s (attempt %d/%d)",
                       self.name, attempt, self.budget.max_retries)

        try:
            devices = await self._discover(self.rediscover_search_timeout,
                                           self.rediscover_response_timeout)
        except (DiscoveryError, OSError, asyncio.TimeoutError) as e:
            logger.error("Failed to rediscover devices: %s", e)
            devices = []
        except Exception as e:
            logger.error("Failed to rediscover devices: %s", e, exc_info=True)
            devices = []

        matches = [d for d in devices if d.display_name == self.name]
        # Bonded players share a room name; stay on the one already bound
        found = next((d for d in matches if d.address == self.handle.address),
                     matches[0] if matches else None)
        if found is not None:
            if found.address != self.handle.address:
                logger.info("Device %s found at new IP: %s (old: %s)",
                            self.name, found.address, self.handle.address)
                self.handle.address = found.address
                await self._bind(found.address)
            return True

        delay = self.backoff_delay(attempt)
        logger.info("Waiting %.0f seconds before next retry...", delay)
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        return False

    def _log_checklist(self) -> None:
        logger.error("Max reconnection attempts reached for device %s", self.name)
        logger.error("Please check:")
        logger.error("  1. Is the device powered on and connected to the network?")
        logger.error("  2. Can you access the device's web interface at http://%s:1400/status?",
                     self.address)
        logger.error("  3. Is a firewall blocking TCP 1400 or SSDP (UDP 1900) between here and the device?")

    async def close(self) -> None:
        """Release the bound session."""
        if self._session is not None:
            await self._session.close()
            self._session = None
