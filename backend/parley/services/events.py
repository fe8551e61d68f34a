import asyncio
import logging
from typing import Any, Protocol

from parley.config import settings

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "MessageCreated"
MESSAGE_EDITED = "MessageEdited"
MESSAGE_DELETED = "MessageDeleted"
REACTION_ADDED = "ReactionAdded"
REACTION_REMOVED = "ReactionRemoved"
CONVERSATION_READ = "ConversationRead"


class EventPublisher(Protocol):
    async def publish(self, event_type: str, payload: dict[str, Any]) -> None: ...


async def emit_event(
    publisher: EventPublisher | None, event_type: str, payload: dict[str, Any]
) -> None:
    """Fire-and-forget publish, bounded by ``publish_timeout_seconds``.

    Called after the primary write committed. Publisher failures are logged
    and never reach the caller.
    """
    if publisher is None:
        return
    try:
        await asyncio.wait_for(
            publisher.publish(event_type, payload),
            timeout=settings.publish_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Publishing %s timed out after %.1fs", event_type, settings.publish_timeout_seconds
        )
    except Exception:
        logger.exception("Publishing %s failed", event_type)
