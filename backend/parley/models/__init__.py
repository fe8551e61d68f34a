from parley.models.user import User
from parley.models.conversation import Conversation, ReadMarker
from parley.models.message import Message, Reaction
from parley.models.search_sync import SearchSyncTask

__all__ = [
    "User",
    "Conversation",
    "ReadMarker",
    "Message",
    "Reaction",
    "SearchSyncTask",
]
