import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from parley.config import settings
from parley.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from parley.models.base import utcnow
from parley.models.message import Message
from parley.models.search_sync import OP_DELETE, OP_UPSERT
from parley.repositories import ConversationRepository, MessageRepository, UserRepository
from parley.schemas.message import MessageOut, MessagePage, ReactionGroup, ReplySnapshot
from parley.schemas.search import SearchResults
from parley.services import search_index
from parley.services.access import require_participant
from parley.services.events import (
    MESSAGE_CREATED,
    MESSAGE_DELETED,
    MESSAGE_EDITED,
    EventPublisher,
    emit_event,
)
from parley.services.reactions import ReactionLedger
from parley.services.search_sync import enqueue

logger = logging.getLogger(__name__)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _truncate(text: str | None, limit: int) -> str | None:
    if text is None or len(text) <= limit:
        return text
    return text[:limit]


def present_message(
    message: Message,
    reactions: list[ReactionGroup] | None = None,
    reply_target_deleted: bool = False,
) -> MessageOut:
    """Client view of a stored message.

    A soft-deleted message keeps its place in the history but shows no
    content and no reactions. The reply snapshot is always shown as it was
    captured.
    """
    reply_to = None
    if message.reply_to_id is not None:
        reply_to = ReplySnapshot(
            message_id=message.reply_to_id,
            author_name=message.reply_author_name,
            content=message.reply_content,
            original_deleted=reply_target_deleted,
        )
    deleted = message.deleted
    return MessageOut(
        id=message.id,
        conversation_id=message.conversation_id,
        author_id=message.author_id,
        body=None if deleted else message.body,
        image_ref=None if deleted else message.image_ref,
        reply_to=reply_to,
        edited=message.edited,
        deleted=deleted,
        created_at=message.created_at,
        updated_at=message.updated_at,
        reactions=[] if deleted else list(reactions or []),
    )


class MessageService:
    """Send, edit, soft delete and page the messages of a conversation.

    Each mutation enqueues its search sync operation in the same
    transaction as the primary write and emits its event after commit.
    Concurrent edits and deletes of one message are serialized by the
    ``version`` column; the loser gets a :class:`ConflictError`.
    """

    def __init__(self, db: AsyncSession, publisher: EventPublisher | None = None):
        self.db = db
        self.publisher = publisher
        self.users = UserRepository(db)
        self.conversations = ConversationRepository(db)
        self.messages = MessageRepository(db)
        self.reactions = ReactionLedger(db, publisher)

    async def send(
        self,
        conversation_id: uuid.UUID,
        author_id: uuid.UUID,
        body: str | None = None,
        image_ref: str | None = None,
        reply_to_id: int | None = None,
    ) -> MessageOut:
        body = _clean(body)
        image_ref = _clean(image_ref)
        if body is None and image_ref is None:
            raise ValidationError("Message needs a body or an image")
        if body is not None and len(body) > settings.max_message_length:
            raise ValidationError(
                f"Message exceeds {settings.max_message_length} characters"
            )

        conversation = await require_participant(self.conversations, conversation_id, author_id)

        message = Message(
            conversation_id=conversation.id,
            author_id=author_id,
            body=body,
            image_ref=image_ref,
        )
        reply_target_deleted = False
        if reply_to_id is not None:
            target = await self.messages.get(reply_to_id)
            if target is None or target.conversation_id != conversation.id:
                raise NotFoundError("Reply target not found")
            author = await self.users.get(target.author_id)
            message.reply_to_id = target.id
            message.reply_author_name = author.display_name if author else None
            # Deleted targets keep the link but no content
            if target.deleted:
                reply_target_deleted = True
            else:
                message.reply_content = _truncate(target.body, settings.reply_snapshot_length)

        await self.messages.save(message)
        await self.conversations.touch_last_message(conversation.id, message.created_at)
        await enqueue(self.db, message.id, OP_UPSERT)
        await self.db.commit()

        logger.debug("Message %s sent in conversation %s", message.id, conversation.id)
        out = present_message(message, reply_target_deleted=reply_target_deleted)
        await emit_event(
            self.publisher,
            MESSAGE_CREATED,
            {
                "conversation_id": conversation.id,
                "message": out.model_dump(mode="json"),
                "recipient_ids": list(conversation.participant_ids),
            },
        )
        return out

    async def _own_message(self, message_id: int, actor_id: uuid.UUID) -> Message:
        message = await self.messages.get(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.author_id != actor_id:
            raise AuthorizationError("Only the author can change a message")
        return message

    async def edit(self, message_id: int, actor_id: uuid.UUID, new_body: str) -> MessageOut:
        message = await self._own_message(message_id, actor_id)
        if message.deleted:
            raise ConflictError("Message was deleted")

        new_body = _clean(new_body)
        if new_body is None and message.image_ref is None:
            raise ValidationError("Message body must not be empty")
        if new_body is not None and len(new_body) > settings.max_message_length:
            raise ValidationError(
                f"Message exceeds {settings.max_message_length} characters"
            )

        message.body = new_body
        message.edited = True
        try:
            await self.db.flush()
            await enqueue(self.db, message.id, OP_UPSERT)
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            logger.info("Edit of message %s lost a concurrent modification", message_id)
            raise ConflictError("Message was changed concurrently")

        conversation = await self.conversations.get(message.conversation_id)
        rosters = await self.reactions.rosters([message.id])
        out = present_message(message, rosters.get(message.id))
        await emit_event(
            self.publisher,
            MESSAGE_EDITED,
            {
                "conversation_id": conversation.id,
                "message": out.model_dump(mode="json"),
                "recipient_ids": list(conversation.participant_ids),
            },
        )
        return out

    async def delete(self, message_id: int, actor_id: uuid.UUID) -> bool:
        """Soft delete. Returns False when the message was already deleted."""
        message = await self._own_message(message_id, actor_id)
        if message.deleted:
            return False

        message.deleted = True
        message.deleted_at = utcnow()
        message.body = None
        message.image_ref = None
        try:
            await self.db.flush()
            await enqueue(self.db, message.id, OP_DELETE)
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            current = await self.messages.get(message_id, fresh=True)
            if current is not None and current.deleted:
                logger.debug("Message %s was deleted concurrently", message_id)
                return False
            logger.info("Delete of message %s lost a concurrent modification", message_id)
            raise ConflictError("Message was changed concurrently")

        conversation = await self.conversations.get(message.conversation_id)
        logger.info("Message %s deleted by %s", message.id, actor_id)
        await emit_event(
            self.publisher,
            MESSAGE_DELETED,
            {
                "conversation_id": conversation.id,
                "message_id": message.id,
                "recipient_ids": list(conversation.participant_ids),
            },
        )
        return True

    async def page(
        self,
        conversation_id: uuid.UUID,
        actor_id: uuid.UUID,
        page_index: int = 0,
        page_size: int | None = None,
    ) -> MessagePage:
        """One page of history, newest first."""
        conversation = await require_participant(self.conversations, conversation_id, actor_id)
        if page_index < 0:
            raise ValidationError("Page index must not be negative")
        size = _clamp_page_size(page_size)

        rows = await self.messages.find_page(conversation.id, page_index * size, size)
        return MessagePage(
            conversation_id=conversation.id,
            page=page_index,
            size=size,
            messages=await self._present_all(rows),
        )

    async def search(
        self,
        conversation_id: uuid.UUID,
        actor_id: uuid.UUID,
        query: str,
        page_index: int = 0,
        page_size: int | None = None,
    ) -> SearchResults:
        """Full-text search inside one conversation.

        Hits come from the secondary index and may lag behind; every hit is
        re-read from the primary store and dropped if it no longer exists
        or was deleted.
        """
        conversation = await require_participant(self.conversations, conversation_id, actor_id)
        if page_index < 0:
            raise ValidationError("Page index must not be negative")
        size = _clamp_page_size(page_size)
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query must not be empty")

        ids = await search_index.search_documents(
            str(conversation.id), query, limit=size, offset=page_index * size
        )
        found = await self.messages.get_many(ids)
        rows = [
            found[i] for i in ids
            if i in found
            and not found[i].deleted
            and found[i].conversation_id == conversation.id
        ]
        return SearchResults(
            query=query,
            page=page_index,
            size=size,
            results=await self._present_all(rows),
        )

    async def _present_all(self, rows: list[Message]) -> list[MessageOut]:
        rosters = await self.reactions.rosters([m.id for m in rows if not m.deleted])
        targets = await self.messages.get_many(
            [m.reply_to_id for m in rows if m.reply_to_id is not None]
        )
        return [
            present_message(
                m,
                rosters.get(m.id),
                reply_target_deleted=(
                    m.reply_to_id is not None
                    and (m.reply_to_id not in targets or targets[m.reply_to_id].deleted)
                ),
            )
            for m in rows
        ]


def _clamp_page_size(page_size: int | None) -> int:
    if page_size is None:
        page_size = settings.default_page_size
    return max(1, min(page_size, settings.max_page_size))
