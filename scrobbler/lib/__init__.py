"""Shared plumbing: config, discovery, connection management, play log."""
