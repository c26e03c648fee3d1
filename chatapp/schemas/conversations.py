import uuid
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from .profiles import ProfileOut
from .messages import MessageOut

class PrivateConversationIn(BaseModel):
    user_id: uuid.UUID

class ConversationIdOut(BaseModel):
    conversation_id: uuid.UUID

class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    is_group: bool
    name: Optional[str] = None
    theme: str = 'default'
    updated_at: Optional[datetime] = None

class ConversationSummaryOut(ConversationOut):
    participants: List[ProfileOut] = Field(default_factory=list)
    last_message: Optional[MessageOut] = None
    unread_count: int = 0

class ParticipantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    conversation_id: uuid.UUID
    user_id: uuid.UUID

class ThemeIn(BaseModel):
    theme: str
