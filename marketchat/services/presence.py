"""Typing indicators.

Typing is advisory and never persisted. Entries expire on their own after a
short TTL unless refreshed by another keystroke.
"""

import logging
import time
from collections.abc import Callable

from cachetools import TTLCache

from marketchat.config import settings
from marketchat.core.identity import Role

logger = logging.getLogger(__name__)


class TypingTracker:
    """Tracks which role is typing in which conversation."""

    def __init__(
        self,
        ttl: float | None = None,
        timer: Callable[[], float] = time.monotonic,
        maxsize: int = 4096,
    ):
        self.ttl = ttl if ttl is not None else settings.TYPING_TTL_SECONDS
        self._timer = timer
        self._entries: TTLCache = TTLCache(
            maxsize=maxsize, ttl=self.ttl, timer=timer
        )

    def set_typing(self, conversation_id: str, role: Role) -> None:
        """Record a keystroke; refreshes the TTL."""
        self._entries[(conversation_id, Role(role))] = self._timer()

    def clear_typing(self, conversation_id: str, role: Role) -> None:
        self._entries.pop((conversation_id, Role(role)), None)

    def is_typing(self, conversation_id: str, role: Role) -> bool:
        return (conversation_id, Role(role)) in self._entries

    def typing_roles(self, conversation_id: str) -> set[Role]:
        """Roles currently typing in a conversation."""
        self._entries.expire()
        return {role for (cid, role) in self._entries.keys() if cid == conversation_id}

    def expire(self) -> None:
        """Drop stale entries now instead of on next access."""
        before = len(self._entries)
        self._entries.expire()
        if before != len(self._entries):
            logger.debug(f"Expired {before - len(self._entries)} typing indicators")
