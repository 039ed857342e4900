"""
Sonos player discovery via SoCo (SSDP multicast).

SoCo is synchronous, so every call runs in a small thread pool and the
whole discovery round is bounded by asyncio.wait_for so a network that
swallows multicast cannot hang the caller.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

import soco

from scrobbler.lib.models import DeviceDescriptor

logger = logging.getLogger(__name__)

# Thread pool for blocking SoCo calls
executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="discovery")

# Slack on top of search + response timeouts before we give up on SoCo
_DISCOVERY_SLACK = 5.0

ALL_ROOMS = "*"


class DiscoveryError(Exception):
    """Discovery itself failed (as opposed to finding nothing)."""


def _describe(speaker, response_timeout: float) -> DeviceDescriptor | None:
    """Ask one player for its room name and model."""
    try:
        info = speaker.get_speaker_info(refresh=True, timeout=response_timeout)
    except Exception as e:
        logger.debug("No speaker info from %s: %s", speaker.ip_address, e)
        return None
    name = info.get("zone_name") or speaker.ip_address
    return DeviceDescriptor(
        address=speaker.ip_address,
        display_name=name,
        model=info.get("model_name", ""),
    )


def _discover_blocking(search_timeout: float, response_timeout: float) -> list[DeviceDescriptor]:
    try:
        speakers = soco.discover(timeout=search_timeout) or set()
    except Exception as e:
        raise DiscoveryError(f"SSDP discovery failed: {e}") from e

    devices = []
    for speaker in sorted(speakers, key=lambda s: s.ip_address):
        device = _describe(speaker, response_timeout)
        if device is not None:
            devices.append(device)
    return devices


async def discover(search_timeout: float = 5.0,
                   response_timeout: float = 5.0) -> list[DeviceDescriptor]:
    """Find Sonos players on the local network.

    Returns an empty list when nothing answers; raises DiscoveryError when
    the discovery transport itself fails or overruns its time budget.
    """
    loop = asyncio.get_running_loop()
    budget = search_timeout + response_timeout + _DISCOVERY_SLACK
    try:
        devices = await asyncio.wait_for(
            loop.run_in_executor(
                executor, _discover_blocking, search_timeout, response_timeout),
            timeout=budget,
        )
    except asyncio.TimeoutError as e:
        raise DiscoveryError(f"Discovery did not finish within {budget:.0f}s") from e

    for device in devices:
        logger.debug("Discovered %s (%s) at %s",
                     device.display_name, device.model or "unknown model", device.address)
    return devices


def select_devices(devices: list[DeviceDescriptor],
                   rooms: list[str] | None) -> list[DeviceDescriptor]:
    """Pick the devices to monitor.

    No rooms → the first device found.  ``["*"]`` → every device.
    Otherwise match room names case-insensitively; a room reported by
    several players (a bonded pair) is monitored once.
    """
    if not devices:
        return []
    if not rooms:
        return devices[:1]
    if ALL_ROOMS in rooms:
        wanted = None
    else:
        wanted = {r.casefold() for r in rooms}

    selected: dict[str, DeviceDescriptor] = {}
    for device in devices:
        name = device.display_name.casefold()
        if wanted is not None and name not in wanted:
            continue
        selected.setdefault(name, device)
    return list(selected.values())


async def discover_with_retry(stop_event: asyncio.Event, *,
                              attempts: int = 3,
                              retry_delay: float = 10.0,
                              search_timeout: float = 5.0,
                              response_timeout: float = 5.0) -> list[DeviceDescriptor]:
    """Startup discovery: retry a bounded number of times until something answers."""
    for attempt in range(1, attempts + 1):
        logger.info("Discovering Sonos devices (attempt %d/%d)...", attempt, attempts)
        try:
            devices = await discover(search_timeout, response_timeout)
        except DiscoveryError as e:
            logger.warning("Discovery failed: %s", e)
            devices = []

        if devices:
            logger.info("Found %d Sonos device(s)", len(devices))
            return devices

        if attempt < attempts:
            logger.info("No Sonos devices found, retrying in %.0fs", retry_delay)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=retry_delay)
                return []
            except asyncio.TimeoutError:
                pass

    logger.warning("No Sonos devices found on the network")
    return []
