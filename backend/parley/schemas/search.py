from pydantic import BaseModel

from parley.schemas.message import MessageOut


class SearchResults(BaseModel):
    query: str
    page: int
    size: int
    results: list[MessageOut]


class SearchSyncStats(BaseModel):
    pending_upsert: int = 0
    pending_delete: int = 0
    synced: int = 0
    stuck: int = 0
