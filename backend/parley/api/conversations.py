import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from parley.api.deps import get_publisher
from parley.database import get_db
from parley.models.user import User
from parley.schemas.conversation import (
    ConversationCreate,
    ConversationOut,
    ConversationSummary,
    UnreadCountOut,
)
from parley.schemas.message import MessageCreate, MessageOut, MessagePage
from parley.schemas.search import SearchResults
from parley.services.auth import get_current_user
from parley.services.conversations import ConversationService
from parley.services.events import EventPublisher
from parley.services.messages import MessageService
from parley.services.read_state import ReadStateService

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


@router.post("/", response_model=ConversationOut)
async def open_conversation(
    data: ConversationCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await ConversationService(db).get_or_create(current_user.id, data.recipient_id)


@router.get("/", response_model=list[ConversationSummary])
async def list_conversations(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await ConversationService(db).list_for_user(current_user.id)


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(
    conversation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await ConversationService(db).get_for_participant(conversation_id, current_user.id)


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(
    conversation_id: uuid.UUID,
    page: int = 0,
    size: int | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await MessageService(db).page(conversation_id, current_user.id, page, size)


@router.post("/{conversation_id}/messages", response_model=MessageOut, status_code=201)
async def send_message(
    conversation_id: uuid.UUID,
    data: MessageCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    publisher: EventPublisher = Depends(get_publisher),
):
    return await MessageService(db, publisher).send(
        conversation_id,
        current_user.id,
        body=data.body,
        image_ref=data.image_ref,
        reply_to_id=data.reply_to_id,
    )


@router.post("/{conversation_id}/read")
async def mark_read(
    conversation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    publisher: EventPublisher = Depends(get_publisher),
):
    advanced = await ReadStateService(db, publisher).mark_read(conversation_id, current_user.id)
    return {"advanced": advanced}


@router.get("/{conversation_id}/unread", response_model=UnreadCountOut)
async def unread_count(
    conversation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    count = await ReadStateService(db).unread_count(conversation_id, current_user.id)
    return UnreadCountOut(conversation_id=conversation_id, unread_count=count)


@router.get("/{conversation_id}/search", response_model=SearchResults)
async def search_messages(
    conversation_id: uuid.UUID,
    q: str,
    page: int = 0,
    size: int | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await MessageService(db).search(conversation_id, current_user.id, q, page, size)
