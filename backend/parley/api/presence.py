import uuid

from fastapi import APIRouter, Depends

from parley.api.deps import get_presence_tracker
from parley.models.user import User
from parley.schemas.presence import PresenceOut
from parley.services.auth import get_current_user
from parley.services.presence import PresenceTracker

router = APIRouter(prefix="/api/presence", tags=["presence"])


@router.post("/heartbeat", response_model=PresenceOut)
async def heartbeat(
    current_user: User = Depends(get_current_user),
    presence: PresenceTracker = Depends(get_presence_tracker),
):
    await presence.heartbeat(current_user.id)
    return PresenceOut(user_id=current_user.id, online=True)


@router.get("/", response_model=list[PresenceOut])
async def list_presence(
    current_user: User = Depends(get_current_user),
    presence: PresenceTracker = Depends(get_presence_tracker),
):
    records = await presence.all_presence()
    return [PresenceOut(user_id=uid, online=online) for uid, online in records.items()]


@router.get("/{user_id}", response_model=PresenceOut)
async def user_presence(
    user_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    presence: PresenceTracker = Depends(get_presence_tracker),
):
    return PresenceOut(user_id=user_id, online=await presence.is_online(user_id))
