import uuid
from sqlalchemy import Column, String, Text, Boolean, ForeignKey, UniqueConstraint, Uuid
from ..core import utcnow
from .types import UTCDateTime
from . import Base

class Message(Base):
    __tablename__ = 'messages'
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey('conversations.id', ondelete='CASCADE'), index=True, nullable=False)
    sender_id = Column(Uuid, ForeignKey('profiles.id', ondelete='CASCADE'), index=True, nullable=False)
    content = Column(Text, nullable=False)
    media_url = Column(Text, nullable=True)  # JSON list of urls for galleries
    media_type = Column(String(16), nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, index=True)
    deleted_at = Column(UTCDateTime, nullable=True)
    reply_to_id = Column(Uuid, ForeignKey('messages.id', ondelete='SET NULL'), nullable=True)

class MessageReaction(Base):
    __tablename__ = 'message_reactions'
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id = Column(Uuid, ForeignKey('messages.id', ondelete='CASCADE'), index=True, nullable=False)
    user_id = Column(Uuid, ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False)
    emoji = Column(String(16), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', 'emoji', name='uix_message_user_emoji'),
    )
