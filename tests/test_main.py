"""Tests for the service wiring and command line."""

import asyncio

import pytest

from scrobbler import main as entry
from scrobbler.lib import discovery
from scrobbler.lib.models import DeviceDescriptor, TrackSnapshot
from scrobbler.lib.play_store import PlayStore
from scrobbler.main import ScrobblerService, parse_args

KITCHEN = DeviceDescriptor("10.0.0.11", "Kitchen", "Sonos One")
LIVING = DeviceDescriptor("10.0.0.12", "Living Room", "Sonos Arc")

WORDS = TrackSnapshot(title="Words", artist="Low")
LAZY = TrackSnapshot(title="Lazy", artist="Low")


@pytest.fixture
def found(monkeypatch, network):
    """Make startup discovery return *devices* and rediscovery use the fake LAN."""
    devices: list[DeviceDescriptor] = []

    async def fake_retry(stop_event, **kwargs):
        return list(devices)

    monkeypatch.setattr(discovery, "discover_with_retry", fake_retry)
    monkeypatch.setattr(discovery, "discover", network.discover)
    return devices


def make_service(store, sink, network, rooms) -> ScrobblerService:
    service = ScrobblerService(store, sink, rooms=rooms)
    service.session_factory = network.session_factory
    service.poll_interval = 0.01
    service.retry_delay = 0.01
    return service


class TestScrobblerService:
    """Tests for ScrobblerService start/stop."""

    @pytest.mark.asyncio
    async def test_monitors_selected_rooms(self, store, sink, network, found) -> None:
        found.extend([KITCHEN, LIVING])
        network.reachable.update({KITCHEN.address, LIVING.address})
        network.tracks[KITCHEN.address] = WORDS
        network.tracks[LIVING.address] = LAZY

        service = make_service(store, sink, network, rooms=["*"])
        await service.start()
        await asyncio.sleep(0.1)
        await service.shutdown()

        assert sorted(s["title"] for s in sink.submitted) == ["Lazy", "Words"]
        assert service.exit_code == 0
        assert all(s.closed for s in network.sessions)

    @pytest.mark.asyncio
    async def test_only_requested_room(self, store, sink, network, found) -> None:
        found.extend([KITCHEN, LIVING])
        network.reachable.update({KITCHEN.address, LIVING.address})
        network.tracks[KITCHEN.address] = WORDS
        network.tracks[LIVING.address] = LAZY

        service = make_service(store, sink, network, rooms=["living room"])
        await service.start()
        await asyncio.sleep(0.1)
        await service.shutdown()

        assert [s["title"] for s in sink.submitted] == ["Lazy"]

    @pytest.mark.asyncio
    async def test_no_devices_stops(self, store, sink, network, found) -> None:
        service = make_service(store, sink, network, rooms=None)
        await service.start()
        assert service.stop_event.is_set()
        assert service.exit_code == 1
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_unreachable_device_ends_service(self, store, sink, network, found) -> None:
        found.append(KITCHEN)
        service = make_service(store, sink, network, rooms=None)
        await service.start()
        await asyncio.wait_for(service.stop_event.wait(), timeout=2)
        await service.shutdown()
        assert service.exit_code == 1

    @pytest.mark.asyncio
    async def test_restart_after_loss(self, store, sink, network, found) -> None:
        found.append(KITCHEN)
        service = make_service(store, sink, network, rooms=None)
        service.restart_delay = 0.05
        await service.start()
        await asyncio.sleep(0.1)

        # Comes back before the next fresh-session attempt
        network.reachable.add(KITCHEN.address)
        network.tracks[KITCHEN.address] = WORDS
        await asyncio.sleep(0.2)
        await service.shutdown()

        assert [s["title"] for s in sink.submitted] == ["Words"]


    @pytest.mark.asyncio
    async def test_rediscovery_error_uses_retry_budget(
            self, store, sink, network, found, monkeypatch, caplog) -> None:
        found.append(KITCHEN)
        network.reachable.add(KITCHEN.address)
        network.tracks[KITCHEN.address] = WORDS

        async def broken(search_timeout, response_timeout):
            raise ValueError("bad SSDP reply")

        monkeypatch.setattr(discovery, "discover", broken)
        service = make_service(store, sink, network, rooms=None)
        service.max_retries = 3
        await service.start()
        await asyncio.sleep(0.05)

        network.reachable.clear()
        await asyncio.wait_for(service.stop_event.wait(), timeout=2)
        await service.shutdown()

        assert "bad SSDP reply" in caplog.text
        assert "attempt 2/3" in caplog.text
        assert "Max reconnection attempts reached for device Kitchen" in caplog.text
        assert service.exit_code == 1

    @pytest.mark.asyncio
    async def test_monitor_crash_is_logged(self, store, sink, network, found, caplog) -> None:
        found.append(KITCHEN)
        network.reachable.add(KITCHEN.address)
        network.fetch_errors[KITCHEN.address] = RuntimeError("decoder exploded")

        service = make_service(store, sink, network, rooms=None)
        await service.start()
        await asyncio.wait_for(service.stop_event.wait(), timeout=2)
        await service.shutdown()

        assert "monitor-Kitchen crashed: decoder exploded" in caplog.text
        assert "Traceback" in caplog.text
        assert service.exit_code == 1
        assert network.sessions[0].closed


class TestParseArgs:
    def test_defaults(self) -> None:
        args = parse_args([])
        assert args.rooms is None
        assert not args.all
        assert not args.dry_run
        assert not args.show_last

    def test_repeatable_room(self) -> None:
        args = parse_args(["--room", "Kitchen", "--room", "Living Room"])
        assert args.rooms == ["Kitchen", "Living Room"]

    def test_flags(self) -> None:
        args = parse_args(["--all", "--dry-run", "--database", "/tmp/p.db", "-v"])
        assert args.all and args.dry_run and args.verbose
        assert args.database == "/tmp/p.db"


@pytest.mark.asyncio
async def test_missing_credentials_exit_code(monkeypatch, tmp_path) -> None:
    for name in ("LASTFM_API_KEY", "LASTFM_API_SECRET", "LASTFM_USERNAME",
                 "LASTFM_PASSWORD", "LASTFM_PASSWORD_HASH"):
        monkeypatch.delenv(name, raising=False)
    args = parse_args(["--database", str(tmp_path / "tracks.db")])
    assert await entry.run(args) == 2


@pytest.mark.asyncio
async def test_show_last(monkeypatch, tmp_path, capsys) -> None:
    path = str(tmp_path / "tracks.db")
    seed = PlayStore(path)
    await seed.open()
    await seed.record_if_new("Kitchen", "Low - Words", 1_700_000_000, 3600)
    await seed.close()

    async def fake_retry(stop_event, **kwargs):
        return [KITCHEN, LIVING]

    monkeypatch.setattr(discovery, "discover_with_retry", fake_retry)
    code = await entry.run(parse_args(["--show-last", "--database", path]))
    out = capsys.readouterr().out
    assert code == 0
    assert "Kitchen: Low - Words" in out
    assert "Living Room: nothing logged yet" in out
