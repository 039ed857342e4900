"""Systemd notify + watchdog heartbeat for the scrobbler.

Sends READY/STATUS/WATCHDOG messages to the systemd notify socket.
Silently no-ops when NOTIFY_SOCKET is unset (running from a shell).

Usage:
    from scrobbler.lib.watchdog import watchdog_loop, notify_status
    asyncio.create_task(watchdog_loop(stop_event))
    notify_status("Monitoring Living Room")
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(msg: str) -> bool:
    """Send a notification message to the systemd notify socket.

    Returns True if a socket was configured and the datagram was sent.
    """
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify failed: %s", e)
        return False
    finally:
        sock.close()
    return True


def notify_status(text: str) -> None:
    """Update the one-line status shown by ``systemctl status``."""
    sd_notify(f"STATUS={text}")


async def watchdog_loop(stop_event: asyncio.Event, interval: float = 20):
    """Send WATCHDOG=1 every *interval* seconds until *stop_event* is set.

    Sends READY=1 first so a Type=notify unit leaves the activating state,
    and STOPPING=1 on the way out.
    """
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ss)", interval)
    while not stop_event.is_set():
        sd_notify("WATCHDOG=1")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    sd_notify("STOPPING=1")
