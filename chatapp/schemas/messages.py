import uuid
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

class MessageIn(BaseModel):
    content: str
    reply_to_id: Optional[uuid.UUID] = None
    # client-generated id for optimistic sends; resending the same id is idempotent
    id: Optional[uuid.UUID] = None

class ReplyPreviewOut(BaseModel):
    id: uuid.UUID
    sender_id: uuid.UUID
    content: str
    deleted: bool = False

class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    conversation_id: uuid.UUID
    sender_id: uuid.UUID
    content: str
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    media_urls: List[str] = Field(default_factory=list)
    is_read: bool = False
    created_at: datetime
    deleted_at: Optional[datetime] = None
    deleted: bool = False
    # False when content is only the placeholder label of a media message
    show_text: bool = True
    reply_to_id: Optional[uuid.UUID] = None
    reply_to: Optional[ReplyPreviewOut] = None

class ReactionIn(BaseModel):
    emoji: str
    present: bool = True

class ReactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    message_id: uuid.UUID
    user_id: uuid.UUID
    emoji: str
    conversation_id: Optional[uuid.UUID] = None

class ReactionResultOut(BaseModel):
    present: bool
    changed: bool

class UploadFailureOut(BaseModel):
    filename: str
    error: str

class AttachmentBatchOut(BaseModel):
    messages: List[MessageOut] = Field(default_factory=list)
    failures: List[UploadFailureOut] = Field(default_factory=list)
