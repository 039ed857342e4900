"""Tests for SoCo-backed discovery and room selection."""

import asyncio
import time
from unittest.mock import MagicMock, patch

import pytest

from scrobbler.lib import discovery
from scrobbler.lib.discovery import DiscoveryError, discover, discover_with_retry, select_devices
from scrobbler.lib.models import DeviceDescriptor


def speaker(ip: str, zone: str, model: str = "Sonos One") -> MagicMock:
    mock = MagicMock()
    mock.ip_address = ip
    mock.get_speaker_info.return_value = {"zone_name": zone, "model_name": model}
    return mock


KITCHEN = DeviceDescriptor("10.0.0.11", "Kitchen", "Sonos One")
LIVING = DeviceDescriptor("10.0.0.12", "Living Room", "Sonos Arc")
LIVING_SUB = DeviceDescriptor("10.0.0.13", "Living Room", "Sonos Sub")


class TestDiscover:
    """Tests for discover()."""

    @pytest.mark.asyncio
    async def test_finds_speakers_sorted(self) -> None:
        found = {speaker("10.0.0.12", "Living Room", "Sonos Arc"),
                 speaker("10.0.0.11", "Kitchen")}
        with patch("soco.discover", return_value=found) as mock_discover:
            devices = await discover(search_timeout=2, response_timeout=3)
        mock_discover.assert_called_once_with(timeout=2)
        assert devices == [KITCHEN, LIVING]

    @pytest.mark.asyncio
    async def test_nothing_found(self) -> None:
        with patch("soco.discover", return_value=None):
            assert await discover() == []

    @pytest.mark.asyncio
    async def test_speaker_info_failure_skipped(self) -> None:
        broken = speaker("10.0.0.20", "Bathroom")
        broken.get_speaker_info.side_effect = OSError("timed out")
        with patch("soco.discover", return_value={broken, speaker("10.0.0.11", "Kitchen")}):
            assert await discover() == [KITCHEN]

    @pytest.mark.asyncio
    async def test_response_timeout_passed_through(self) -> None:
        sp = speaker("10.0.0.11", "Kitchen")
        with patch("soco.discover", return_value={sp}):
            await discover(search_timeout=1, response_timeout=7)
        sp.get_speaker_info.assert_called_once_with(refresh=True, timeout=7)

    @pytest.mark.asyncio
    async def test_socket_error_raises(self) -> None:
        with patch("soco.discover", side_effect=OSError("Network unreachable")):
            with pytest.raises(DiscoveryError):
                await discover()

    @pytest.mark.asyncio
    async def test_unexpected_soco_error_raises(self) -> None:
        with patch("soco.discover", side_effect=ValueError("bad SSDP reply")):
            with pytest.raises(DiscoveryError, match="bad SSDP reply"):
                await discover()

    @pytest.mark.asyncio
    async def test_overrun_raises(self) -> None:
        def hang(timeout):
            time.sleep(1)

        with patch.object(discovery, "_DISCOVERY_SLACK", 0.05), \
                patch("soco.discover", side_effect=hang):
            with pytest.raises(DiscoveryError, match="did not finish"):
                await discover(search_timeout=0, response_timeout=0)


class TestSelectDevices:
    """Tests for room selection."""

    def test_default_is_first_device(self) -> None:
        assert select_devices([KITCHEN, LIVING], None) == [KITCHEN]
        assert select_devices([KITCHEN, LIVING], []) == [KITCHEN]

    def test_all_rooms(self) -> None:
        assert select_devices([KITCHEN, LIVING], ["*"]) == [KITCHEN, LIVING]

    def test_case_insensitive(self) -> None:
        assert select_devices([KITCHEN, LIVING], ["living room"]) == [LIVING]

    def test_bonded_players_monitored_once(self) -> None:
        assert select_devices([KITCHEN, LIVING, LIVING_SUB], ["*"]) == [KITCHEN, LIVING]

    def test_unknown_room(self) -> None:
        assert select_devices([KITCHEN], ["Garage"]) == []

    def test_no_devices(self) -> None:
        assert select_devices([], ["Kitchen"]) == []


class TestDiscoverWithRetry:
    @pytest.mark.asyncio
    async def test_retries_until_found(self) -> None:
        results = [[], [KITCHEN]]

        async def fake(search_timeout, response_timeout):
            return results.pop(0)

        with patch.object(discovery, "discover", side_effect=fake) as mock_discover:
            devices = await discover_with_retry(asyncio.Event(), attempts=3, retry_delay=0.01)
        assert devices == [KITCHEN]
        assert mock_discover.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up(self) -> None:
        async def fake(search_timeout, response_timeout):
            raise DiscoveryError("multicast blocked")

        with patch.object(discovery, "discover", side_effect=fake) as mock_discover:
            assert await discover_with_retry(asyncio.Event(), attempts=2, retry_delay=0.01) == []
        assert mock_discover.call_count == 2

    @pytest.mark.asyncio
    async def test_stop_event_aborts_wait(self) -> None:
        stop = asyncio.Event()
        stop.set()

        async def fake(search_timeout, response_timeout):
            return []

        with patch.object(discovery, "discover", side_effect=fake) as mock_discover:
            result = await asyncio.wait_for(
                discover_with_retry(stop, attempts=5, retry_delay=30), timeout=2)
        assert result == []
        assert mock_discover.call_count == 1
