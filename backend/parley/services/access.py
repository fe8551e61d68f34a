import uuid

from parley.errors import AuthorizationError, NotFoundError
from parley.models.conversation import Conversation
from parley.repositories import ConversationRepository


async def require_participant(
    conversations: ConversationRepository,
    conversation_id: uuid.UUID,
    user_id: uuid.UUID,
) -> Conversation:
    conversation = await conversations.get(conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    if not conversation.includes(user_id):
        raise AuthorizationError("Not a participant of this conversation")
    return conversation
