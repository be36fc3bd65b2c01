from pydantic import BaseModel

from app.models.enums import PresenceStatus


class PresenceUpdateRequest(BaseModel):
    status: PresenceStatus
