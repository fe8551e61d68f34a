"""Explicit repositories over the primary (relational) store.

Each repository binds an ``AsyncSession`` and exposes the small set of
queries the services need. Services never build ad-hoc queries against the
models, so the mapping to the storage schema lives in one place.
"""
import uuid
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select, true, update
from sqlalchemy.ext.asyncio import AsyncSession

from parley.models.conversation import Conversation, ReadMarker
from parley.models.message import Message, Reaction
from parley.models.search_sync import PENDING_STATE, STATE_SYNCED, SearchSyncTask
from parley.models.user import User


def after_boundary(boundary_at: datetime | None, boundary_id: int | None):
    """SQL predicate: message sorts strictly after the (created_at, id) boundary."""
    if boundary_at is None or boundary_id is None:
        return true()
    return or_(
        Message.created_at > boundary_at,
        and_(Message.created_at == boundary_at, Message.id > boundary_id),
    )


class BaseRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, entity):
        self.db.add(entity)
        await self.db.flush()
        return entity


class UserRepository(BaseRepository):
    async def get(self, user_id: uuid.UUID) -> User | None:
        return await self.db.get(User, user_id)

    async def display_names(self, user_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, str]:
        if not user_ids:
            return {}
        result = await self.db.execute(
            select(User.id, User.display_name).where(User.id.in_(set(user_ids)))
        )
        return {row[0]: row[1] for row in result.all()}


class ConversationRepository(BaseRepository):
    async def get(self, conversation_id: uuid.UUID) -> Conversation | None:
        return await self.db.get(Conversation, conversation_id, populate_existing=True)

    async def find_by_pair(
        self, user_low_id: uuid.UUID, user_high_id: uuid.UUID
    ) -> Conversation | None:
        result = await self.db.execute(
            select(Conversation)
            .where(
                and_(
                    Conversation.user_low_id == user_low_id,
                    Conversation.user_high_id == user_high_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: uuid.UUID) -> list[Conversation]:
        result = await self.db.execute(
            select(Conversation)
            .where(
                or_(
                    Conversation.user_low_id == user_id,
                    Conversation.user_high_id == user_id,
                )
            )
            .order_by(
                Conversation.last_message_at.is_(None),
                Conversation.last_message_at.desc(),
                Conversation.created_at.desc(),
            )
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def touch_last_message(self, conversation_id: uuid.UUID, at: datetime) -> bool:
        """Advance last_message_at, never move it back."""
        result = await self.db.execute(
            update(Conversation)
            .where(
                and_(
                    Conversation.id == conversation_id,
                    or_(
                        Conversation.last_message_at.is_(None),
                        Conversation.last_message_at < at,
                    ),
                )
            )
            .values(last_message_at=at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


class MessageRepository(BaseRepository):
    async def get(self, message_id: int, fresh: bool = False) -> Message | None:
        return await self.db.get(Message, message_id, populate_existing=fresh)

    async def get_many(self, message_ids: Sequence[int]) -> dict[int, Message]:
        if not message_ids:
            return {}
        result = await self.db.execute(
            select(Message).where(Message.id.in_(set(message_ids)))
        )
        return {m.id: m for m in result.scalars().all()}

    async def find_page(
        self, conversation_id: uuid.UUID, offset: int, limit: int
    ) -> list[Message]:
        """Newest first; ties on created_at are broken by id."""
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def latest(
        self, conversation_id: uuid.UUID, include_deleted: bool = True
    ) -> Message | None:
        query = select(Message).where(Message.conversation_id == conversation_id)
        if not include_deleted:
            query = query.where(Message.deleted.is_(False))
        result = await self.db.execute(
            query.order_by(Message.created_at.desc(), Message.id.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def count_unread(
        self,
        conversation_id: uuid.UUID,
        user_id: uuid.UUID,
        boundary_at: datetime | None,
        boundary_id: int | None,
    ) -> int:
        result = await self.db.execute(
            select(func.count(Message.id)).where(
                and_(
                    Message.conversation_id == conversation_id,
                    Message.author_id != user_id,
                    Message.deleted.is_(False),
                    after_boundary(boundary_at, boundary_id),
                )
            )
        )
        return result.scalar_one()

    async def live_ids(self) -> list[int]:
        result = await self.db.execute(
            select(Message.id).where(Message.deleted.is_(False)).order_by(Message.id)
        )
        return [row[0] for row in result.all()]


class ReactionRepository(BaseRepository):
    async def find(self, message_id: int, user_id: uuid.UUID, emoji: str) -> Reaction | None:
        result = await self.db.execute(
            select(Reaction).where(
                and_(
                    Reaction.message_id == message_id,
                    Reaction.user_id == user_id,
                    Reaction.emoji == emoji,
                )
            )
        )
        return result.scalar_one_or_none()

    async def remove(self, message_id: int, user_id: uuid.UUID, emoji: str) -> bool:
        result = await self.db.execute(
            delete(Reaction).where(
                and_(
                    Reaction.message_id == message_id,
                    Reaction.user_id == user_id,
                    Reaction.emoji == emoji,
                )
            )
        )
        return result.rowcount > 0

    async def for_messages(self, message_ids: Sequence[int]) -> list[Reaction]:
        if not message_ids:
            return []
        result = await self.db.execute(
            select(Reaction)
            .where(Reaction.message_id.in_(set(message_ids)))
            .order_by(Reaction.created_at, Reaction.id)
        )
        return list(result.scalars().all())


class ReadMarkerRepository(BaseRepository):
    async def get(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> ReadMarker | None:
        result = await self.db.execute(
            select(ReadMarker).where(
                and_(
                    ReadMarker.conversation_id == conversation_id,
                    ReadMarker.user_id == user_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def advance(
        self,
        conversation_id: uuid.UUID,
        user_id: uuid.UUID,
        boundary_at: datetime,
        boundary_id: int,
    ) -> bool:
        """Move the marker forward; a single conditional UPDATE keeps it monotonic."""
        result = await self.db.execute(
            update(ReadMarker)
            .where(
                and_(
                    ReadMarker.conversation_id == conversation_id,
                    ReadMarker.user_id == user_id,
                    or_(
                        ReadMarker.last_read_at.is_(None),
                        ReadMarker.last_read_at < boundary_at,
                        and_(
                            ReadMarker.last_read_at == boundary_at,
                            ReadMarker.last_read_message_id < boundary_id,
                        ),
                    ),
                )
            )
            .values(last_read_at=boundary_at, last_read_message_id=boundary_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


class SearchSyncRepository(BaseRepository):
    async def get(self, message_id: int) -> SearchSyncTask | None:
        # Rows are updated with plain UPDATE statements; always reload.
        result = await self.db.execute(
            select(SearchSyncTask)
            .where(SearchSyncTask.message_id == message_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def enqueue(self, message_id: int, operation: str, now: datetime) -> None:
        """Overwrite the pending operation of a message, or create its row.

        Plain UPDATE statements on ``revision`` instead of ORM versioning:
        the worker may have touched the row since it was last read, and a
        request must never fail because of that.
        """
        result = await self.db.execute(
            update(SearchSyncTask)
            .where(SearchSyncTask.message_id == message_id)
            .values(
                operation=operation,
                state=PENDING_STATE[operation],
                attempts=0,
                next_attempt_at=now,
                last_error=None,
                revision=SearchSyncTask.revision + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.save(
                SearchSyncTask(
                    message_id=message_id,
                    operation=operation,
                    state=PENDING_STATE[operation],
                    attempts=0,
                    next_attempt_at=now,
                    revision=1,
                )
            )

    async def mark_synced(self, task_id: int, revision: int) -> bool:
        """Only succeeds if no newer change was enqueued since ``revision``."""
        result = await self.db.execute(
            update(SearchSyncTask)
            .where(and_(SearchSyncTask.id == task_id, SearchSyncTask.revision == revision))
            .values(state=STATE_SYNCED, attempts=0, last_error=None, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def mark_failed(
        self,
        task_id: int,
        revision: int,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
    ) -> bool:
        result = await self.db.execute(
            update(SearchSyncTask)
            .where(and_(SearchSyncTask.id == task_id, SearchSyncTask.revision == revision))
            .values(
                attempts=attempts,
                next_attempt_at=next_attempt_at,
                last_error=error,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def due(self, now: datetime, limit: int) -> list[SearchSyncTask]:
        result = await self.db.execute(
            select(SearchSyncTask)
            .where(
                and_(
                    SearchSyncTask.state != STATE_SYNCED,
                    SearchSyncTask.next_attempt_at <= now,
                )
            )
            .order_by(SearchSyncTask.next_attempt_at, SearchSyncTask.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_by_state(self) -> dict[str, int]:
        result = await self.db.execute(
            select(SearchSyncTask.state, func.count(SearchSyncTask.id)).group_by(
                SearchSyncTask.state
            )
        )
        return {row[0]: row[1] for row in result.all()}

    async def count_stuck(self, min_attempts: int) -> int:
        result = await self.db.execute(
            select(func.count(SearchSyncTask.id)).where(
                and_(
                    SearchSyncTask.state != STATE_SYNCED,
                    SearchSyncTask.attempts >= min_attempts,
                )
            )
        )
        return result.scalar_one()
