"""Sonos scrobbler: monitors Sonos players and scrobbles plays to Last.fm."""

__version__ = "1.0.0"
