import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from parley.models.base import Base, TimestampMixin, UUIDPrimaryKey, UUIDType


def normalize_pair(user_a: uuid.UUID, user_b: uuid.UUID) -> tuple[uuid.UUID, uuid.UUID]:
    """Order a participant pair so that the smaller id comes first."""
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


class Conversation(Base, UUIDPrimaryKey, TimestampMixin):
    """The single direct-message thread between two users."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("user_low_id", "user_high_id", name="uq_conversations_pair"),
    )

    user_low_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=False, index=True
    )
    user_high_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=False, index=True
    )
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def participant_ids(self) -> tuple[uuid.UUID, uuid.UUID]:
        return (self.user_low_id, self.user_high_id)

    def includes(self, user_id: uuid.UUID) -> bool:
        return user_id in self.participant_ids

    def other_participant(self, user_id: uuid.UUID) -> uuid.UUID:
        return self.user_high_id if user_id == self.user_low_id else self.user_low_id


class ReadMarker(Base, TimestampMixin):
    """How far a participant has read; the boundary is the (created_at, id) of a message."""

    __tablename__ = "read_markers"
    __table_args__ = (UniqueConstraint("conversation_id", "user_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=False
    )
    last_read_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_read_message_id: Mapped[int | None] = mapped_column(nullable=True)
