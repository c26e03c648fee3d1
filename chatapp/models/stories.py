import uuid
from sqlalchemy import Column, String, Text, ForeignKey, UniqueConstraint, Uuid
from ..core import utcnow
from .types import UTCDateTime
from . import Base

class Story(Base):
    __tablename__ = 'stories'
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey('profiles.id', ondelete='CASCADE'), index=True, nullable=False)
    media_url = Column(String, nullable=False)
    media_type = Column(String(16), default='image', nullable=False)
    caption = Column(Text, nullable=True)
    visibility = Column(String(16), default='world', nullable=False)  # world, friends
    created_at = Column(UTCDateTime, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False, index=True)

class StoryView(Base):
    __tablename__ = 'story_views'
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    story_id = Column(Uuid, ForeignKey('stories.id', ondelete='CASCADE'), index=True, nullable=False)
    viewer_id = Column(Uuid, ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False)
    viewed_at = Column(UTCDateTime, default=utcnow)
    __table_args__ = (
        UniqueConstraint('story_id', 'viewer_id', name='uix_story_viewer'),
    )
