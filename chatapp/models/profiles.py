from sqlalchemy import Column, String, Boolean, Uuid
from ..core import utcnow
from .types import UTCDateTime
from . import Base

class Profile(Base):
    __tablename__ = 'profiles'
    id = Column(Uuid, primary_key=True)
    username = Column(String(50), unique=True, index=True, nullable=True)
    full_name = Column(String(100), nullable=True)
    avatar_url = Column(String, nullable=True)
    is_online = Column(Boolean, default=False, nullable=False)
    last_seen = Column(UTCDateTime, default=utcnow)
    last_name_change_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
