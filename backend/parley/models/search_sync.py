from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from parley.models.base import Base, TimestampMixin, utcnow

OP_UPSERT = "upsert"
OP_DELETE = "delete"

STATE_PENDING_UPSERT = "pending-upsert"
STATE_PENDING_DELETE = "pending-delete"
STATE_SYNCED = "synced"

PENDING_STATE = {OP_UPSERT: STATE_PENDING_UPSERT, OP_DELETE: STATE_PENDING_DELETE}


class SearchSyncTask(Base, TimestampMixin):
    """Outbox row: the pending index operation for one message.

    There is at most one row per message; a newer enqueue overwrites the
    operation and bumps ``revision`` so an in-flight apply of the older
    operation does not mark it synced.
    """

    __tablename__ = "search_sync_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("messages.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    operation: Mapped[str] = mapped_column(String(10), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
