import uuid
from datetime import datetime

from pydantic import BaseModel


class ConversationCreate(BaseModel):
    recipient_id: uuid.UUID


class ConversationOut(BaseModel):
    id: uuid.UUID
    user_low_id: uuid.UUID
    user_high_id: uuid.UUID
    created_at: datetime
    last_message_at: datetime | None = None

    model_config = {"from_attributes": True}


class ConversationSummary(BaseModel):
    id: uuid.UUID
    other_user_id: uuid.UUID
    other_display_name: str | None = None
    unread_count: int = 0
    last_message_preview: str | None = None
    last_message_at: datetime | None = None
    created_at: datetime


class UnreadCountOut(BaseModel):
    conversation_id: uuid.UUID
    unread_count: int
