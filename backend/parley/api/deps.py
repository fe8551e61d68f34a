from fastapi import Request

from parley.services.events import EventPublisher
from parley.services.presence import PresenceTracker
from parley.services.search_sync import SearchSyncWorker
from parley.websocket.manager import manager


def get_publisher() -> EventPublisher:
    return manager


def get_presence_tracker(request: Request) -> PresenceTracker:
    return request.app.state.presence


def get_search_sync_worker() -> SearchSyncWorker:
    return SearchSyncWorker()
