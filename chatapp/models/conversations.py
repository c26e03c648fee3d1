import uuid
from sqlalchemy import Column, String, Boolean, ForeignKey, UniqueConstraint, Uuid
from ..core import utcnow
from .types import UTCDateTime
from . import Base

WORLD_CONVERSATION_ID = uuid.UUID('00000000-0000-0000-0000-000000000001')

class Conversation(Base):
    __tablename__ = 'conversations'
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    is_group = Column(Boolean, default=False, nullable=False)
    name = Column(String(100), nullable=True)
    theme = Column(String(32), default='default', nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, index=True)

class ConversationParticipant(Base):
    __tablename__ = 'conversation_participants'
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey('conversations.id', ondelete='CASCADE'), index=True, nullable=False)
    user_id = Column(Uuid, ForeignKey('profiles.id', ondelete='CASCADE'), index=True, nullable=False)
    joined_at = Column(UTCDateTime, default=utcnow)
    __table_args__ = (
        UniqueConstraint('conversation_id', 'user_id', name='uix_conversation_participant'),
    )
