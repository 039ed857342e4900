"""
Sonos device session (UPnP AVTransport over HTTP, port 1400).

Two requests are all the monitor needs:
  GET  /status/info                          — reachability probe
  POST /MediaRenderer/AVTransport/Control    — SOAP GetPositionInfo

GetPositionInfo returns the current track as a DIDL-Lite document that is
itself XML-escaped inside the SOAP envelope, so parsing happens in two
layers: the envelope (strict: a bad envelope abandons the poll) and the
embedded metadata (lenient: a missing or unparsable tag is just None).
"""

import asyncio
import html
import logging
import re
from xml.etree import ElementTree

import aiohttp

from scrobbler.lib.models import TrackSnapshot
from scrobbler.players.base import DeviceSession, DeviceUnreachable, EnvelopeParseError

logger = logging.getLogger(__name__)

SONOS_PORT = 1400
PROBE_PATH = "/status/info"
AVTRANSPORT_PATH = "/MediaRenderer/AVTransport/Control"
AVTRANSPORT_SERVICE = "urn:schemas-upnp-org:service:AVTransport:1"
GET_POSITION_INFO = "GetPositionInfo"

PROBE_TIMEOUT = 5.0
REQUEST_TIMEOUT = 10.0

# Sonos puts this in place of metadata for line-in and some streams
NOT_IMPLEMENTED = "NOT_IMPLEMENTED"

POSITION_INFO_ENVELOPE = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
    's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
    "<s:Body>"
    f'<u:{GET_POSITION_INFO} xmlns:u="{AVTRANSPORT_SERVICE}">'
    "<InstanceID>0</InstanceID>"
    f"</u:{GET_POSITION_INFO}>"
    "</s:Body>"
    "</s:Envelope>"
)

# DIDL local tag name -> TrackSnapshot field
_DIDL_FIELDS = {
    "title": "title",      # dc:title
    "creator": "artist",   # dc:creator
    "album": "album",      # upnp:album
}


def soap_headers(action: str, service: str = AVTRANSPORT_SERVICE) -> dict:
    """Headers for a UPnP SOAP call; the action header value is quoted."""
    return {
        "SOAPAction": f'"{service}#{action}"',
        "Content-Type": 'text/xml; charset="utf-8"',
    }


def _local_name(tag: str) -> str:
    """Strip ``{namespace}`` or ``prefix:`` from a tag."""
    return tag.rsplit("}", 1)[-1].rsplit(":", 1)[-1]


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _scan_didl(text: str) -> dict:
    """Regex extraction for metadata ElementTree refuses to parse.

    Sonos metadata from some services uses prefixes without declaring
    them, or arrives truncated.  Each field is matched on its local name.
    """
    fields = dict.fromkeys(_DIDL_FIELDS.values())
    for tag, name in _DIDL_FIELDS.items():
        match = re.search(
            rf"<(?:[\w.-]+:)?{tag}(?:\s[^>]*)?>(.*?)</(?:[\w.-]+:)?{tag}\s*>",
            text, re.DOTALL)
        if match:
            fields[name] = _clean(html.unescape(match.group(1)))
    return fields


def parse_didl(text: str | None) -> dict:
    """Extract title/artist/album from a DIDL-Lite string.

    Returns a dict with all three keys; values are None when the tag is
    absent or empty.  Never raises.
    """
    fields = dict.fromkeys(_DIDL_FIELDS.values())
    if not text or not text.strip() or text.strip() == NOT_IMPLEMENTED:
        return fields

    try:
        root = ElementTree.fromstring(text)
    except ElementTree.ParseError as e:
        logger.debug("DIDL not well-formed (%s), scanning tags", e)
        return _scan_didl(text)

    for el in root.iter():
        name = _DIDL_FIELDS.get(_local_name(el.tag))
        if name and fields[name] is None:
            fields[name] = _clean(el.text)
    return fields


def _fault_message(root: ElementTree.Element) -> str:
    code = (root.findtext(".//{*}errorCode") or "").strip()
    desc = (root.findtext(".//{*}errorDescription") or "").strip()
    if code or desc:
        return f"UPnPError {code} {desc}".strip()
    fault_string = (root.findtext(".//{*}faultstring") or "").strip()
    return fault_string or "UPnPError (unknown SOAP fault)"


def parse_position_info(xml_text: str | bytes) -> TrackSnapshot:
    """Parse a GetPositionInfo response envelope into a TrackSnapshot.

    Raises EnvelopeParseError for malformed XML, SOAP faults, or an
    envelope without a GetPositionInfoResponse.
    """
    try:
        root = ElementTree.fromstring(xml_text)
    except ElementTree.ParseError as e:
        raise EnvelopeParseError(f"Malformed SOAP envelope: {e}") from e

    if root.find(".//{*}Fault") is not None:
        raise EnvelopeParseError(_fault_message(root))

    response = root.find(f".//{{*}}{GET_POSITION_INFO}Response")
    if response is None:
        raise EnvelopeParseError(f"No {GET_POSITION_INFO}Response in envelope")

    fields = parse_didl(response.findtext("{*}TrackMetaData"))
    return TrackSnapshot(
        title=fields["title"],
        artist=fields["artist"],
        album=fields["album"],
        position=(response.findtext("{*}RelTime") or "").strip(),
        duration=(response.findtext("{*}TrackDuration") or "").strip(),
    )


class SonosSession(DeviceSession):
    """Probe and track reads against one Sonos player.

    The aiohttp session is shared and owned by the service; closing a
    SonosSession does not close it.
    """

    def __init__(self, address: str, http: aiohttp.ClientSession, *,
                 port: int = SONOS_PORT,
                 probe_timeout: float = PROBE_TIMEOUT,
                 request_timeout: float = REQUEST_TIMEOUT):
        super().__init__(address)
        self._http = http
        self.port = port
        self.probe_timeout = probe_timeout
        self.request_timeout = request_timeout

    @property
    def base_url(self) -> str:
        return f"http://{self.address}:{self.port}"

    async def probe(self) -> None:
        url = f"{self.base_url}{PROBE_PATH}"
        try:
            async with self._http.get(
                url, timeout=aiohttp.ClientTimeout(total=self.probe_timeout)
            ) as resp:
                if resp.status >= 400:
                    raise DeviceUnreachable(f"{url} returned HTTP {resp.status}")
                await resp.read()
        except asyncio.TimeoutError as e:
            raise DeviceUnreachable(
                f"{url} timed out after {self.probe_timeout}s") from e
        except aiohttp.ClientError as e:
            raise DeviceUnreachable(f"{url}: {e}") from e

    async def fetch_current_track(self) -> TrackSnapshot:
        url = f"{self.base_url}{AVTRANSPORT_PATH}"
        try:
            async with self._http.post(
                url,
                data=POSITION_INFO_ENVELOPE.encode("utf-8"),
                headers=soap_headers(GET_POSITION_INFO),
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as resp:
                body = await resp.read()
                status = resp.status
        except asyncio.TimeoutError as e:
            raise DeviceUnreachable(
                f"{GET_POSITION_INFO} timed out after {self.request_timeout}s") from e
        except aiohttp.ClientError as e:
            raise DeviceUnreachable(f"{GET_POSITION_INFO} failed: {e}") from e

        logger.debug("%s from %s: HTTP %d, %d bytes",
                     GET_POSITION_INFO, self.address, status, len(body))

        # UPnP faults come back as HTTP 500 with a SOAP body
        if status >= 400 and b"Fault" not in body:
            raise DeviceUnreachable(f"{GET_POSITION_INFO} returned HTTP {status}")
        return parse_position_info(body)
