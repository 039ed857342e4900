"""
Last.fm scrobble sink (pylast).

Credentials come from the environment (or a .env file):

    LASTFM_API_KEY, LASTFM_API_SECRET, LASTFM_USERNAME,
    LASTFM_PASSWORD_HASH  (md5 of the password), or LASTFM_PASSWORD

pylast is synchronous; scrobbles run in a small thread pool.
"""

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import pylast

logger = logging.getLogger(__name__)

executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="lastfm")

_REQUIRED = ("LASTFM_API_KEY", "LASTFM_API_SECRET", "LASTFM_USERNAME")


class MissingCredentials(Exception):
    """One or more Last.fm environment variables are unset."""


@dataclass(frozen=True)
class LastFmCredentials:
    api_key: str
    api_secret: str
    username: str
    password_hash: str

    def __repr__(self):
        return f"LastFmCredentials(username={self.username!r})"

    @classmethod
    def from_env(cls, environ=None) -> "LastFmCredentials":
        env = os.environ if environ is None else environ
        missing = [name for name in _REQUIRED if not env.get(name)]
        password_hash = env.get("LASTFM_PASSWORD_HASH")
        password = env.get("LASTFM_PASSWORD")
        if not password_hash and not password:
            missing.append("LASTFM_PASSWORD")
        if missing:
            raise MissingCredentials(
                "Missing Last.fm settings: " + ", ".join(missing))
        return cls(
            api_key=env["LASTFM_API_KEY"],
            api_secret=env["LASTFM_API_SECRET"],
            username=env["LASTFM_USERNAME"],
            password_hash=password_hash or pylast.md5(password),
        )


class LastFmSink:
    """Submits plays to Last.fm.  Never raises from ``submit``."""

    def __init__(self, network: pylast.LastFMNetwork):
        self.network = network

    @classmethod
    async def connect(cls, credentials: LastFmCredentials) -> "LastFmSink":
        """Authenticate (a blocking session-key request) and return a sink."""
        loop = asyncio.get_running_loop()
        network = await loop.run_in_executor(executor, lambda: pylast.LastFMNetwork(
            api_key=credentials.api_key,
            api_secret=credentials.api_secret,
            username=credentials.username,
            password_hash=credentials.password_hash,
        ))
        logger.info("Authenticated with Last.fm as %s", credentials.username)
        return cls(network)

    async def submit(self, artist: str | None, title: str | None,
                     album: str | None = None, timestamp: int | None = None) -> bool:
        if not artist or not title:
            logger.info("Not scrobbling incomplete metadata (artist=%r, title=%r)",
                        artist, title)
            return False

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(executor, lambda: self.network.scrobble(
                artist=artist, title=title, timestamp=timestamp, album=album))
        except (pylast.PyLastError, OSError) as e:
            logger.error("Failed to scrobble %s - %s: %s", artist, title, e)
            return False
        return True


class LoggingSink:
    """Dry-run sink: logs what would have been scrobbled."""

    async def submit(self, artist: str | None, title: str | None,
                     album: str | None = None, timestamp: int | None = None) -> bool:
        if not artist or not title:
            return False
        logger.info("[dry-run] Would scrobble %s - %s%s at %s", artist, title,
                    f" ({album})" if album else "", timestamp)
        return True
