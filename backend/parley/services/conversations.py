import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from parley.config import settings
from parley.errors import ConflictError, NotFoundError, ValidationError
from parley.models.conversation import Conversation, ReadMarker, normalize_pair
from parley.repositories import ConversationRepository, MessageRepository, UserRepository
from parley.schemas.conversation import ConversationSummary
from parley.services.access import require_participant
from parley.services.read_state import ReadStateService

logger = logging.getLogger(__name__)


def preview_text(body: str | None, limit: int | None = None) -> str | None:
    if not body:
        return None
    limit = limit or settings.preview_length
    return body if len(body) <= limit else body[:limit].rstrip() + "…"


class ConversationService:
    """Resolves the unique thread between two users."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.users = UserRepository(db)
        self.conversations = ConversationRepository(db)
        self.messages = MessageRepository(db)
        self.read_state = ReadStateService(db)

    async def get_or_create(self, user_a: uuid.UUID, user_b: uuid.UUID) -> Conversation:
        """Return the conversation of the pair, creating it on first contact.

        The pair is normalized before lookup, so the call direction does not
        matter. Two simultaneous first contacts race on the unique
        ``(user_low_id, user_high_id)`` constraint; the loser rolls back and
        re-reads the winner's row.
        """
        if user_a == user_b:
            raise ValidationError("Cannot open a conversation with yourself")

        low, high = normalize_pair(user_a, user_b)
        existing = await self.conversations.find_by_pair(low, high)
        if existing is not None:
            return existing

        for user_id in (low, high):
            if await self.users.get(user_id) is None:
                raise NotFoundError(f"User {user_id} not found")

        conversation = Conversation(user_low_id=low, user_high_id=high)
        try:
            await self.conversations.save(conversation)
            self.db.add_all([
                ReadMarker(conversation_id=conversation.id, user_id=low),
                ReadMarker(conversation_id=conversation.id, user_id=high),
            ])
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Concurrent first contact between %s and %s, re-reading", low, high)
            existing = await self.conversations.find_by_pair(low, high)
            if existing is None:
                raise ConflictError("Conversation creation conflicted; retry")
            return existing

        logger.info("Opened conversation %s between %s and %s", conversation.id, low, high)
        return conversation

    async def get_for_participant(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> Conversation:
        return await require_participant(self.conversations, conversation_id, user_id)

    async def list_for_user(self, user_id: uuid.UUID) -> list[ConversationSummary]:
        conversations = await self.conversations.list_for_user(user_id)
        names = await self.users.display_names(
            [c.other_participant(user_id) for c in conversations]
        )

        summaries = []
        for conversation in conversations:
            other_id = conversation.other_participant(user_id)
            latest = await self.messages.latest(conversation.id, include_deleted=False)
            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    other_user_id=other_id,
                    other_display_name=names.get(other_id),
                    unread_count=await self.read_state.count_unread(conversation.id, user_id),
                    last_message_preview=preview_text(latest.body) if latest else None,
                    last_message_at=conversation.last_message_at,
                    created_at=conversation.created_at,
                )
            )
        return summaries
