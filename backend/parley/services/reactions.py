import logging
import uuid
from collections.abc import Iterable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from parley.config import settings
from parley.errors import AuthorizationError, NotFoundError, ValidationError
from parley.models.message import Message, Reaction
from parley.repositories import ConversationRepository, MessageRepository, ReactionRepository
from parley.schemas.message import ReactionGroup
from parley.services.events import (
    REACTION_ADDED,
    REACTION_REMOVED,
    EventPublisher,
    emit_event,
)

logger = logging.getLogger(__name__)


def build_rosters(reactions: Iterable[Reaction]) -> dict[int, list[ReactionGroup]]:
    """Group reactions per message, then per emoji in order of first use."""
    grouped: dict[int, dict[str, list[uuid.UUID]]] = {}
    for reaction in reactions:
        by_emoji = grouped.setdefault(reaction.message_id, {})
        by_emoji.setdefault(reaction.emoji, []).append(reaction.user_id)
    return {
        message_id: [
            ReactionGroup(emoji=emoji, count=len(user_ids), user_ids=user_ids)
            for emoji, user_ids in by_emoji.items()
        ]
        for message_id, by_emoji in grouped.items()
    }


def _clean_emoji(emoji: str) -> str:
    emoji = (emoji or "").strip()
    if not emoji:
        raise ValidationError("Emoji must not be empty")
    if len(emoji) > settings.max_emoji_length:
        raise ValidationError("Emoji is too long")
    return emoji


class ReactionLedger:
    def __init__(self, db: AsyncSession, publisher: EventPublisher | None = None):
        self.db = db
        self.publisher = publisher
        self.conversations = ConversationRepository(db)
        self.messages = MessageRepository(db)
        self.reactions = ReactionRepository(db)

    async def _reactable(self, message_id: int, user_id: uuid.UUID):
        message = await self.messages.get(message_id)
        if message is None or message.deleted:
            raise NotFoundError("Message not found")
        conversation = await self.conversations.get(message.conversation_id)
        if conversation is None or not conversation.includes(user_id):
            raise AuthorizationError("Not a participant of this conversation")
        return message, conversation

    async def add(self, message_id: int, user_id: uuid.UUID, emoji: str) -> bool:
        """Add a reaction; returns False when the (user, emoji) pair already existed."""
        emoji = _clean_emoji(emoji)
        message, conversation = await self._reactable(message_id, user_id)

        if await self.reactions.find(message.id, user_id, emoji) is not None:
            return False

        self.db.add(Reaction(message_id=message.id, user_id=user_id, emoji=emoji))
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.debug("Reaction %s on %s by %s already recorded", emoji, message_id, user_id)
            return False

        await emit_event(
            self.publisher,
            REACTION_ADDED,
            self._payload(message, conversation, user_id, emoji),
        )
        return True

    async def remove(self, message_id: int, user_id: uuid.UUID, emoji: str) -> bool:
        """Remove a reaction; returns False when there was nothing to remove."""
        emoji = _clean_emoji(emoji)
        message, conversation = await self._reactable(message_id, user_id)

        removed = await self.reactions.remove(message.id, user_id, emoji)
        await self.db.commit()
        if removed:
            await emit_event(
                self.publisher,
                REACTION_REMOVED,
                self._payload(message, conversation, user_id, emoji),
            )
        return removed

    async def rosters(self, message_ids: Sequence[int]) -> dict[int, list[ReactionGroup]]:
        return build_rosters(await self.reactions.for_messages(message_ids))

    @staticmethod
    def _payload(message: Message, conversation, user_id: uuid.UUID, emoji: str) -> dict:
        return {
            "conversation_id": conversation.id,
            "message_id": message.id,
            "user_id": user_id,
            "emoji": emoji,
            "recipient_ids": list(conversation.participant_ids),
        }
