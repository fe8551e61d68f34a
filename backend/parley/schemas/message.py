import uuid
from datetime import datetime

from pydantic import BaseModel


class MessageCreate(BaseModel):
    body: str | None = None
    image_ref: str | None = None  # opaque object-storage key or URL
    reply_to_id: int | None = None


class MessageUpdate(BaseModel):
    body: str


class ReactionCreate(BaseModel):
    emoji: str


class ReactionGroup(BaseModel):
    emoji: str
    count: int
    user_ids: list[uuid.UUID]


class ReplySnapshot(BaseModel):
    message_id: int
    author_name: str | None = None
    content: str | None = None
    original_deleted: bool = False


class MessageOut(BaseModel):
    id: int
    conversation_id: uuid.UUID
    author_id: uuid.UUID
    body: str | None = None
    image_ref: str | None = None
    reply_to: ReplySnapshot | None = None
    edited: bool = False
    deleted: bool = False
    created_at: datetime
    updated_at: datetime
    reactions: list[ReactionGroup] = []


class MessagePage(BaseModel):
    conversation_id: uuid.UUID
    page: int
    size: int
    messages: list[MessageOut]
