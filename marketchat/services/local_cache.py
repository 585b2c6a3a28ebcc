"""Local durable cache of one participant's engine state, kept in Redis."""

import json
import logging
from typing import Any

from redis.asyncio import Redis

from marketchat.config import settings
from marketchat.core.identity import normalize_identifier
from marketchat.schemas.common import utcnow

logger = logging.getLogger(__name__)


class LocalCache:
    """Store a JSON snapshot of conversations, notifications and pending mutations.

    One key per participant; the snapshot is replaced as a whole on every save
    and expires if the participant does not come back within the TTL.
    """

    def __init__(
        self,
        redis: Redis,
        participant_id: str,
        ttl: int | None = None,
        prefix: str | None = None,
    ):
        self.redis = redis
        self.participant_id = normalize_identifier(participant_id)
        self.ttl = ttl if ttl is not None else settings.LOCAL_CACHE_TTL_SECONDS
        self.key = f"{prefix or settings.LOCAL_CACHE_PREFIX}:snapshot:{self.participant_id}"

    async def save(self, snapshot: dict[str, Any]) -> None:
        """Replace the stored snapshot."""
        data = {**snapshot, "savedAt": utcnow().isoformat()}
        await self.redis.set(self.key, json.dumps(data), ex=self.ttl)

    async def load(self) -> dict[str, Any] | None:
        """Get the stored snapshot, or None if missing or unreadable."""
        raw = await self.redis.get(self.key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding unreadable cache snapshot {self.key}: {e}")
            await self.redis.delete(self.key)
            return None

    async def clear(self) -> None:
        await self.redis.delete(self.key)
