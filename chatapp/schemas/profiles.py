import uuid
from datetime import datetime
from pydantic import BaseModel, ConfigDict
from typing import Optional

class ProfileSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    username: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None

class ProfileOut(ProfileSummary):
    online: bool = False
    last_seen: Optional[datetime] = None
    last_name_change_at: Optional[datetime] = None

class ProvisionIn(BaseModel):
    username: Optional[str] = None
    full_name: Optional[str] = None

class NameUpdateIn(BaseModel):
    full_name: str

class UsernameUpdateIn(BaseModel):
    username: str

class ActionOkOut(BaseModel):
    ok: bool = True
    message: Optional[str] = None
