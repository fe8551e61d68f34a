import uuid

from pydantic import BaseModel


class PresenceOut(BaseModel):
    user_id: uuid.UUID
    online: bool
