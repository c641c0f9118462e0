"""
ListSync configuration — all environment variables in one place.

Read from environment at import time. Engines and stores take a Settings
instance so tests can pass their own values.
"""

from __future__ import annotations

import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None


class Settings:
    """Client settings from environment variables."""

    def __init__(self) -> None:
        # Echo suppression
        self.GUARD_TTL_MS: int = _int_env("LISTSYNC_GUARD_TTL_MS", 500)

        # Change feed resubscription backoff
        self.RESUBSCRIBE_BASE_DELAY_MS: int = _int_env("LISTSYNC_RESUBSCRIBE_BASE_DELAY_MS", 200)
        self.RESUBSCRIBE_MAX_DELAY_MS: int = _int_env("LISTSYNC_RESUBSCRIBE_MAX_DELAY_MS", 5000)

        # Events buffered per subscription before the feed gives up and resyncs
        self.FEED_QUEUE_MAX: int = _int_env("LISTSYNC_FEED_QUEUE_MAX", 1000)

        # Payload limits
        self.MAX_TEXT_LENGTH: int = _int_env("LISTSYNC_MAX_TEXT_LENGTH", 500)
        self.MAX_NOTES_LENGTH: int = _int_env("LISTSYNC_MAX_NOTES_LENGTH", 1000)
        self.MIN_QUANTITY: int = 1
        self.MAX_QUANTITY: int = 999

        # Postgres store
        self.DATABASE_URL: str = os.environ.get("DATABASE_URL", "")
        self.NOTIFY_CHANNEL: str = os.environ.get("LISTSYNC_NOTIFY_CHANNEL", "list_item_changes")

    @property
    def guard_ttl(self) -> float:
        """Guard lifetime in seconds."""
        return self.GUARD_TTL_MS / 1000

    def resubscribe_delay(self, attempt: int) -> float:
        """Backoff delay in seconds for the given resubscription attempt (0-based)."""
        delay_ms = min(self.RESUBSCRIBE_BASE_DELAY_MS * (2**attempt), self.RESUBSCRIBE_MAX_DELAY_MS)
        return delay_ms / 1000

    def require_database_url(self) -> str:
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL environment variable is required")
        return self.DATABASE_URL


# Singleton instance
settings = Settings()
