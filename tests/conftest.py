"""Test fixtures for scrobbler tests."""

import asyncio
from collections.abc import AsyncGenerator

import pytest

from scrobbler.lib.models import DeviceDescriptor, TrackSnapshot
from scrobbler.lib.play_store import PlayStore
from scrobbler.players.base import DeviceSession, DeviceUnreachable


class FakeNetwork:
    """Stands in for the LAN: which addresses answer, and what they play."""

    def __init__(self):
        self.reachable: set[str] = set()
        self.tracks: dict[str, TrackSnapshot] = {}
        self.fetch_errors: dict[str, Exception] = {}
        self.devices: list[DeviceDescriptor] = []
        self.discover_calls: list[tuple[float, float]] = []
        self.sessions: list["FakeSession"] = []

    def session_factory(self, address: str) -> "FakeSession":
        session = FakeSession(address, self)
        self.sessions.append(session)
        return session

    async def discover(self, search_timeout: float, response_timeout: float):
        self.discover_calls.append((search_timeout, response_timeout))
        return list(self.devices)


class FakeSession(DeviceSession):
    def __init__(self, address: str, network: FakeNetwork):
        super().__init__(address)
        self.network = network
        self.probes = 0
        self.fetches = 0
        self.closed = False

    async def probe(self) -> None:
        self.probes += 1
        if self.address not in self.network.reachable:
            raise DeviceUnreachable(f"{self.address} refused connection")

    async def fetch_current_track(self) -> TrackSnapshot:
        self.fetches += 1
        if self.address in self.network.fetch_errors:
            raise self.network.fetch_errors[self.address]
        if self.address not in self.network.reachable:
            raise DeviceUnreachable(f"{self.address} refused connection")
        return self.network.tracks.get(self.address, TrackSnapshot())

    async def close(self) -> None:
        self.closed = True


class RecordingSink:
    """Scrobble sink that remembers what it was given."""

    def __init__(self, result: bool = True):
        self.result = result
        self.submitted: list[dict] = []

    async def submit(self, artist, title, album=None, timestamp=None) -> bool:
        self.submitted.append(
            {"artist": artist, "title": title, "album": album, "timestamp": timestamp})
        return self.result


class FakeClock:
    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stop_event() -> asyncio.Event:
    return asyncio.Event()


@pytest.fixture
async def store(tmp_path) -> AsyncGenerator[PlayStore, None]:
    """A play log in a temporary SQLite file."""
    play_store = PlayStore(str(tmp_path / "tracks.db"))
    await play_store.open()
    yield play_store
    await play_store.close()
