"""Outbox-driven synchronization of messages into the search index.

Request handlers only ever call :func:`enqueue`, inside the transaction of
the primary write. :class:`SearchSyncWorker` drains the outbox, applies the
*current* primary state of each message to the index and retries failures
with capped exponential backoff. A row stays pending until the index
accepted it; nothing is dropped.
"""
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parley.config import settings
from parley.database import async_session
from parley.models.base import utcnow
from parley.models.message import Message
from parley.models.search_sync import (
    OP_UPSERT,
    STATE_PENDING_DELETE,
    STATE_PENDING_UPSERT,
    STATE_SYNCED,
)
from parley.repositories import MessageRepository, SearchSyncRepository
from parley.services import search_index

logger = logging.getLogger(__name__)


def to_search_document(message: Message) -> dict:
    return {
        "message_id": message.id,
        "conversation_id": str(message.conversation_id),
        "author_id": str(message.author_id),
        "content": message.body,
        "image_ref": message.image_ref,
        "edited": message.edited,
        "created_at": message.created_at.isoformat(),
    }


def backoff_delay(attempts: int) -> float:
    """Seconds to wait before retry number ``attempts`` (1-based)."""
    delay = settings.search_sync_base_backoff * (2 ** max(attempts - 1, 0))
    return min(delay, settings.search_sync_max_backoff)


async def enqueue(db: AsyncSession, message_id: int, operation: str) -> None:
    """Record the pending index operation for a message in the caller's transaction."""
    await SearchSyncRepository(db).enqueue(message_id, operation, utcnow())


class SearchSyncWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker = async_session,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    async def drain(self, limit: int | None = None) -> int:
        """Apply due outbox rows once. Returns how many became synced."""
        now = self.clock()
        synced = 0
        async with self.session_factory() as db:
            repo = SearchSyncRepository(db)
            due = [
                (t.id, t.message_id, t.operation, t.revision, t.attempts)
                for t in await repo.due(now, limit or settings.search_sync_batch_size)
            ]
            for task_id, message_id, operation, revision, attempts in due:
                try:
                    await self._apply(db, message_id, operation)
                except Exception as exc:
                    await self._schedule_retry(repo, task_id, message_id, revision, attempts, exc, now)
                else:
                    if await repo.mark_synced(task_id, revision):
                        synced += 1
                    else:
                        logger.debug("Sync of message %s superseded by a newer change", message_id)
                await db.commit()
        return synced

    async def _apply(self, db: AsyncSession, message_id: int, operation: str) -> None:
        message = await MessageRepository(db).get(message_id, fresh=True)
        if operation == OP_UPSERT and message is not None and not message.deleted:
            await search_index.upsert_document(to_search_document(message))
        else:
            await search_index.delete_document(message_id)

    async def _schedule_retry(
        self,
        repo: SearchSyncRepository,
        task_id: int,
        message_id: int,
        revision: int,
        attempts: int,
        exc: Exception,
        now: datetime,
    ) -> None:
        attempts += 1
        delay = backoff_delay(attempts)
        error = f"{type(exc).__name__}: {exc}"[:500]
        await repo.mark_failed(
            task_id, revision, attempts, now + timedelta(seconds=delay), error
        )
        if attempts >= settings.search_sync_alert_attempts:
            logger.error(
                "Search sync for message %s still failing after %d attempts, next try in %.0fs: %s",
                message_id, attempts, delay, error,
            )
        else:
            logger.warning(
                "Search sync for message %s failed (attempt %d), retrying in %.1fs: %s",
                message_id, attempts, delay, error,
            )

    async def stats(self) -> dict[str, int]:
        async with self.session_factory() as db:
            repo = SearchSyncRepository(db)
            counts = await repo.count_by_state()
            stuck = await repo.count_stuck(settings.search_sync_alert_attempts)
        return {
            "pending_upsert": counts.get(STATE_PENDING_UPSERT, 0),
            "pending_delete": counts.get(STATE_PENDING_DELETE, 0),
            "synced": counts.get(STATE_SYNCED, 0),
            "stuck": stuck,
        }

    async def report_stuck(self) -> int:
        async with self.session_factory() as db:
            stuck = await SearchSyncRepository(db).count_stuck(
                settings.search_sync_alert_attempts
            )
        if stuck:
            logger.warning(
                "ALERT: %d search sync tasks failed %d or more times", stuck,
                settings.search_sync_alert_attempts,
            )
        return stuck

    async def reindex_all(self) -> int:
        """Queue an upsert for every live message, e.g. after the index was lost."""
        async with self.session_factory() as db:
            message_ids = await MessageRepository(db).live_ids()
            for message_id in message_ids:
                await enqueue(db, message_id, OP_UPSERT)
            await db.commit()
        logger.info("Queued %d messages for reindexing", len(message_ids))
        return len(message_ids)
