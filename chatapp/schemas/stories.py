import uuid
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from .profiles import ProfileSummary

class StoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    media_url: str
    media_type: str
    caption: Optional[str] = None
    visibility: str
    created_at: datetime
    expires_at: datetime
    has_viewed: bool = False

class StoryGroupOut(BaseModel):
    user_id: uuid.UUID
    profile: Optional[ProfileSummary] = None
    stories: List[StoryOut] = Field(default_factory=list)
    has_unviewed: bool = False

class StoryViewerOut(BaseModel):
    viewer_id: uuid.UUID
    viewed_at: Optional[datetime] = None
    profile: Optional[ProfileSummary] = None
