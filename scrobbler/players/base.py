# Sonos Scrobbler
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Abstract base class for device sessions.

A session is bound to one device address and exposes the only two things
the monitor needs from a player: a cheap reachability probe and a read of
the current track.  The connection manager recreates the session when the
device moves to a new address.
"""

from abc import ABC, abstractmethod

from scrobbler.lib.models import TrackSnapshot


class DeviceError(Exception):
    """Base for everything a device session can raise."""


class DeviceUnreachable(DeviceError):
    """Transport failure: refused, timed out, or a non-success HTTP status."""


class EnvelopeParseError(DeviceError):
    """The device answered, but not with the envelope we expected."""


class DeviceSession(ABC):
    """Interface every device session must implement."""

    def __init__(self, address: str):
        self.address = address

    @abstractmethod
    async def probe(self) -> None: ...

    @abstractmethod
    async def fetch_current_track(self) -> TrackSnapshot: ...

    # -- Optional: override in sessions that hold resources --

    async def close(self) -> None:
        pass  # nothing to release by default
