from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from parley.api.deps import get_publisher
from parley.database import get_db
from parley.models.user import User
from parley.schemas.message import MessageOut, MessageUpdate, ReactionCreate
from parley.services.auth import get_current_user
from parley.services.events import EventPublisher
from parley.services.messages import MessageService
from parley.services.reactions import ReactionLedger

router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.patch("/{message_id}", response_model=MessageOut)
async def edit_message(
    message_id: int,
    data: MessageUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    publisher: EventPublisher = Depends(get_publisher),
):
    return await MessageService(db, publisher).edit(message_id, current_user.id, data.body)


@router.delete("/{message_id}", status_code=204)
async def delete_message(
    message_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    publisher: EventPublisher = Depends(get_publisher),
):
    await MessageService(db, publisher).delete(message_id, current_user.id)
    return Response(status_code=204)


@router.post("/{message_id}/reactions")
async def add_reaction(
    message_id: int,
    data: ReactionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    publisher: EventPublisher = Depends(get_publisher),
):
    added = await ReactionLedger(db, publisher).add(message_id, current_user.id, data.emoji)
    return {"added": added}


@router.delete("/{message_id}/reactions/{emoji}")
async def remove_reaction(
    message_id: int,
    emoji: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    publisher: EventPublisher = Depends(get_publisher),
):
    removed = await ReactionLedger(db, publisher).remove(message_id, current_user.id, emoji)
    return {"removed": removed}
