import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from parley.models.conversation import ReadMarker
from parley.repositories import ConversationRepository, MessageRepository, ReadMarkerRepository
from parley.services.access import require_participant
from parley.services.events import CONVERSATION_READ, EventPublisher, emit_event

logger = logging.getLogger(__name__)


class ReadStateService:
    """Per-participant read markers and the unread counts derived from them.

    The marker is the ``(created_at, id)`` of the newest message the user has
    seen, the same key ``MessageService.page`` orders by. Unread counts are a
    direct ``COUNT`` over the conversation index, so they always equal a
    recount.
    """

    def __init__(self, db: AsyncSession, publisher: EventPublisher | None = None):
        self.db = db
        self.publisher = publisher
        self.conversations = ConversationRepository(db)
        self.messages = MessageRepository(db)
        self.markers = ReadMarkerRepository(db)

    async def mark_read(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        """Advance the marker to the newest message. Returns False when nothing moved."""
        conversation = await require_participant(self.conversations, conversation_id, user_id)
        latest = await self.messages.latest(conversation.id)
        if latest is None:
            return False

        marker = await self.markers.get(conversation.id, user_id)
        if marker is None:
            await self.markers.save(
                ReadMarker(
                    conversation_id=conversation.id,
                    user_id=user_id,
                    last_read_at=latest.created_at,
                    last_read_message_id=latest.id,
                )
            )
            advanced = True
        else:
            advanced = await self.markers.advance(
                conversation.id, user_id, latest.created_at, latest.id
            )
        await self.db.commit()

        if advanced:
            logger.debug("User %s read conversation %s up to %s", user_id, conversation.id, latest.id)
            await emit_event(
                self.publisher,
                CONVERSATION_READ,
                {
                    "conversation_id": conversation.id,
                    "reader_id": user_id,
                    "last_read_message_id": latest.id,
                    "recipient_ids": [conversation.other_participant(user_id)],
                },
            )
        return advanced

    async def unread_count(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> int:
        conversation = await require_participant(self.conversations, conversation_id, user_id)
        return await self.count_unread(conversation.id, user_id)

    async def count_unread(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> int:
        marker = await self.markers.get(conversation_id, user_id)
        return await self.messages.count_unread(
            conversation_id,
            user_id,
            marker.last_read_at if marker else None,
            marker.last_read_message_id if marker else None,
        )
