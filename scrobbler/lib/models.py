"""
Data model shared by the scrobbler services.

DeviceHandle and RetryBudget are mutable and owned by a single
ConnectionManager.  Everything else is a frozen value object.
"""

from dataclasses import dataclass, field
from enum import Enum

UNKNOWN_TRACK_KEY = "<unknown track>"


@dataclass(frozen=True)
class DeviceDescriptor:
    """One player as reported by discovery."""

    address: str
    display_name: str
    model: str = ""


@dataclass
class DeviceHandle:
    """The device a monitoring session is bound to.

    ``address`` is rewritten when rediscovery finds the same
    ``display_name`` at a new IP (DHCP lease change).
    """

    address: str
    display_name: str


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class RetryBudget:
    max_retries: int
    count: int = field(default=0)

    @property
    def exhausted(self) -> bool:
        return self.count > self.max_retries

    def consume(self) -> int:
        self.count += 1
        return self.count

    def reset(self) -> None:
        self.count = 0


def duration_to_seconds(text: str | None) -> int:
    """Convert ``H:MM:SS`` or ``MM:SS`` to seconds.

    Streams report ``NOT_IMPLEMENTED`` or an empty string; those give 0.
    """
    if not text:
        return 0
    try:
        parts = [int(p) for p in text.strip().split(":")]
    except ValueError:
        return 0
    seconds = 0
    for part in parts:
        seconds = seconds * 60 + part
    return seconds if len(parts) in (2, 3) else 0


@dataclass(frozen=True)
class TrackSnapshot:
    """One point-in-time read of what the device is playing.

    Any of title/artist/album may be None (idle, radio, line-in, or
    partially tagged media). That is a valid snapshot, not an error.
    """

    title: str | None = None
    artist: str | None = None
    album: str | None = None
    position: str = ""
    duration: str = ""

    @property
    def has_metadata(self) -> bool:
        return bool(self.title or self.artist)

    @property
    def position_seconds(self) -> int:
        return duration_to_seconds(self.position)

    @property
    def duration_seconds(self) -> int:
        return duration_to_seconds(self.duration)

    @property
    def key(self) -> str:
        return track_key(self.artist, self.title)


@dataclass(frozen=True)
class PlayRecord:
    device_name: str
    track_key: str
    played_at: int


def track_key(artist: str | None, title: str | None) -> str:
    """Stable identity used to tell one track from the next."""
    if artist and title:
        return f"{artist} - {title}"
    if artist or title:
        return artist or title
    return UNKNOWN_TRACK_KEY
