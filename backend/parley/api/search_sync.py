from fastapi import APIRouter, Depends

from parley.api.deps import get_search_sync_worker
from parley.models.user import User
from parley.schemas.search import SearchSyncStats
from parley.services.auth import get_current_user
from parley.services.search_sync import SearchSyncWorker

router = APIRouter(prefix="/api/search-sync", tags=["search-sync"])


@router.get("/stats", response_model=SearchSyncStats)
async def sync_stats(
    current_user: User = Depends(get_current_user),
    worker: SearchSyncWorker = Depends(get_search_sync_worker),
):
    return SearchSyncStats(**await worker.stats())
