"""Sync worker: drains queued mutations and refreshes from the backend."""

import asyncio
import logging

from redis.asyncio import Redis

from marketchat.config import settings
from marketchat.core.identity import Actor
from marketchat.services import BackendClient, ConversationService, LocalCache

logger = logging.getLogger(__name__)


async def sync_once(service: ConversationService) -> dict[str, int]:
    """Run one reconciliation pass. Returns counts for logging."""
    results = await service.retry_pending()
    refreshed = await service.refresh()
    await service.flush()
    return {
        "retried": len(results),
        "synced": sum(1 for result in results if result.synced),
        "pending": service.pending_status()["count"],
        "refreshed": int(refreshed),
    }


async def main() -> None:
    """Main sync loop."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if not settings.SYNC_PARTICIPANT_ID:
        logger.error("SYNC_PARTICIPANT_ID is not configured, nothing to sync")
        return

    actor = Actor(id=settings.SYNC_PARTICIPANT_ID, role=settings.SYNC_PARTICIPANT_ROLE)
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    service = ConversationService(
        actor,
        BackendClient(actor),
        LocalCache(redis, actor.id),
    )

    logger.info(f"Starting sync worker for {actor.id} ({actor.role.value})...")
    logger.info(f"Syncing every {settings.SYNC_INTERVAL_SECONDS} seconds")

    try:
        await service.load()
        while True:
            try:
                counts = await sync_once(service)
                if counts["retried"] or counts["pending"]:
                    logger.info(
                        f"Retried {counts['retried']} mutation(s), {counts['synced']} synced, "
                        f"{counts['pending']} still pending"
                    )
            except Exception as e:
                logger.error(f"Error in sync loop: {e}")

            await asyncio.sleep(settings.SYNC_INTERVAL_SECONDS)
    finally:
        await service.close()
        await redis.close()


if __name__ == "__main__":
    asyncio.run(main())
