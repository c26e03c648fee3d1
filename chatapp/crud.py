"""
Store query surface.

Every function takes an open AsyncSession and leaves transaction control to the
caller, so an operation can compose several of them into one unit of work.
"""
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update, delete, func, and_, or_, text
from sqlalchemy.orm import aliased

from .core import utcnow
from .models import (
    Profile,
    Conversation,
    ConversationParticipant,
    Message,
    MessageReaction,
    Story,
    StoryView,
    WORLD_CONVERSATION_ID,
)


# locking
async def acquire_pair_lock(session, sorted_key: str, timeout_seconds: float):
    """Transaction-scoped advisory lock; a no-op on backends without one"""
    if session.bind.dialect.name != 'postgresql':
        return
    await session.execute(text(f"SET LOCAL lock_timeout = '{int(timeout_seconds * 1000)}ms'"))
    await session.execute(select(func.pg_advisory_xact_lock(func.hashtext(sorted_key))))


# profiles
async def get_profile(session, user_id: uuid.UUID) -> Optional[Profile]:
    q = await session.execute(select(Profile).where(Profile.id == user_id))
    return q.scalars().first()

async def get_profiles(session, user_ids: Iterable[uuid.UUID]) -> List[Profile]:
    ids = list(set(user_ids))
    if not ids:
        return []
    q = await session.execute(select(Profile).where(Profile.id.in_(ids)))
    return q.scalars().all()

async def profile_exists(session, user_id: uuid.UUID) -> bool:
    q = await session.execute(select(Profile.id).where(Profile.id == user_id))
    return q.scalar() is not None

async def username_taken(session, username: str, exclude_id: uuid.UUID = None) -> bool:
    q = select(Profile.id).where(func.lower(Profile.username) == username.lower())
    if exclude_id is not None:
        q = q.where(Profile.id != exclude_id)
    res = await session.execute(q)
    return res.scalar() is not None

async def search_profiles(session, viewer_id: uuid.UUID, query: str, limit: int = 20) -> List[Profile]:
    pattern = f"%{query.lower()}%"
    q = select(Profile).where(
        Profile.id != viewer_id,
        or_(func.lower(Profile.username).like(pattern), func.lower(Profile.full_name).like(pattern)),
    ).order_by(Profile.username).limit(limit)
    res = await session.execute(q)
    return res.scalars().all()


# conversations
async def get_conversation(session, conversation_id: uuid.UUID) -> Optional[Conversation]:
    q = await session.execute(select(Conversation).where(Conversation.id == conversation_id))
    return q.scalars().first()

async def find_private_conversation(session, user_a: uuid.UUID, user_b: uuid.UUID) -> Optional[uuid.UUID]:
    p1 = aliased(ConversationParticipant)
    p2 = aliased(ConversationParticipant)
    q = (
        select(Conversation.id)
        .join(p1, and_(p1.conversation_id == Conversation.id, p1.user_id == user_a))
        .join(p2, and_(p2.conversation_id == Conversation.id, p2.user_id == user_b))
        .where(Conversation.is_group.is_(False), Conversation.id != WORLD_CONVERSATION_ID)
        .order_by(Conversation.created_at.asc())
        .limit(1)
    )
    res = await session.execute(q)
    return res.scalar()

async def create_conversation(session, conversation_id: uuid.UUID = None, is_group: bool = False,
                              name: str = None) -> Conversation:
    now = utcnow()
    c = Conversation(id=conversation_id or uuid.uuid4(), is_group=is_group, name=name,
                     created_at=now, updated_at=now)
    session.add(c)
    await session.flush()
    return c

async def add_participant(session, conversation_id: uuid.UUID, user_id: uuid.UUID) -> ConversationParticipant:
    p = ConversationParticipant(conversation_id=conversation_id, user_id=user_id)
    session.add(p)
    await session.flush()
    return p

async def is_participant(session, conversation_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    q = await session.execute(select(ConversationParticipant.id).where(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.user_id == user_id,
    ))
    return q.scalar() is not None

async def can_access_conversation(session, conversation_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    if conversation_id == WORLD_CONVERSATION_ID:
        return True
    return await is_participant(session, conversation_id, user_id)

async def list_participant_ids(session, conversation_id: uuid.UUID) -> List[uuid.UUID]:
    q = await session.execute(select(ConversationParticipant.user_id).where(
        ConversationParticipant.conversation_id == conversation_id))
    return q.scalars().all()

async def list_user_conversations(session, user_id: uuid.UUID) -> List[Conversation]:
    member_of = select(ConversationParticipant.conversation_id).where(ConversationParticipant.user_id == user_id)
    q = select(Conversation).where(
        or_(Conversation.id.in_(member_of), Conversation.id == WORLD_CONVERSATION_ID)
    ).order_by(Conversation.updated_at.desc())
    res = await session.execute(q)
    return res.scalars().all()

async def list_friend_ids(session, user_id: uuid.UUID) -> set:
    """Profiles sharing at least one non-world conversation with user_id"""
    mine = aliased(ConversationParticipant)
    theirs = aliased(ConversationParticipant)
    q = (
        select(theirs.user_id)
        .join(mine, mine.conversation_id == theirs.conversation_id)
        .where(
            mine.user_id == user_id,
            theirs.user_id != user_id,
            mine.conversation_id != WORLD_CONVERSATION_ID,
        )
        .distinct()
    )
    res = await session.execute(q)
    return set(res.scalars().all())

async def touch_conversation(session, conversation_id: uuid.UUID, at: datetime):
    await session.execute(update(Conversation).where(Conversation.id == conversation_id).values(updated_at=at))


# messages
async def get_message(session, message_id: uuid.UUID) -> Optional[Message]:
    q = await session.execute(select(Message).where(Message.id == message_id))
    return q.scalars().first()

async def get_messages(session, message_ids: Iterable[uuid.UUID]) -> List[Message]:
    ids = [i for i in set(message_ids) if i is not None]
    if not ids:
        return []
    q = await session.execute(select(Message).where(Message.id.in_(ids)))
    return q.scalars().all()

async def insert_message(session, conversation_id: uuid.UUID, sender_id: uuid.UUID, content: str,
                         media_url: str = None, media_type: str = None, reply_to_id: uuid.UUID = None,
                         message_id: uuid.UUID = None, created_at: datetime = None) -> Message:
    m = Message(
        id=message_id or uuid.uuid4(),
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        media_url=media_url,
        media_type=media_type,
        reply_to_id=reply_to_id,
        created_at=created_at or utcnow(),
    )
    session.add(m)
    await session.flush()
    return m

async def update_message(session, message_id: uuid.UUID, is_read: bool = None, deleted_at: datetime = None) -> int:
    values = {}
    if is_read is not None:
        values['is_read'] = is_read
    if deleted_at is not None:
        values['deleted_at'] = deleted_at
    if not values:
        return 0
    res = await session.execute(update(Message).where(Message.id == message_id).values(**values))
    return res.rowcount

async def list_messages(session, conversation_id: uuid.UUID, limit: int = None, before: datetime = None) -> List[Message]:
    q = select(Message).where(Message.conversation_id == conversation_id)
    if before is not None:
        q = q.where(Message.created_at < before)
    if limit:
        # newest page, returned oldest first
        q = q.order_by(Message.created_at.desc()).limit(limit)
        res = await session.execute(q)
        return list(reversed(res.scalars().all()))
    res = await session.execute(q.order_by(Message.created_at.asc()))
    return res.scalars().all()

async def list_unread_for_viewer(session, conversation_id: uuid.UUID, viewer_id: uuid.UUID) -> List[Message]:
    q = await session.execute(select(Message).where(
        Message.conversation_id == conversation_id,
        Message.sender_id != viewer_id,
        Message.is_read.is_(False),
    ).order_by(Message.created_at.asc()))
    return q.scalars().all()

async def last_message(session, conversation_id: uuid.UUID) -> Optional[Message]:
    q = await session.execute(select(Message).where(Message.conversation_id == conversation_id)
                              .order_by(Message.created_at.desc()).limit(1))
    return q.scalars().first()

async def unread_count(session, conversation_id: uuid.UUID, viewer_id: uuid.UUID) -> int:
    q = await session.execute(select(func.count(Message.id)).where(
        Message.conversation_id == conversation_id,
        Message.sender_id != viewer_id,
        Message.is_read.is_(False),
        Message.deleted_at.is_(None),
    ))
    return q.scalar() or 0


# reactions
async def get_reaction(session, message_id: uuid.UUID, user_id: uuid.UUID, emoji: str) -> Optional[MessageReaction]:
    q = await session.execute(select(MessageReaction).where(
        MessageReaction.message_id == message_id,
        MessageReaction.user_id == user_id,
        MessageReaction.emoji == emoji,
    ))
    return q.scalars().first()

async def insert_reaction(session, message_id: uuid.UUID, user_id: uuid.UUID, emoji: str) -> MessageReaction:
    r = MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji)
    session.add(r)
    await session.flush()
    return r

async def delete_reaction(session, message_id: uuid.UUID, user_id: uuid.UUID, emoji: str) -> Optional[MessageReaction]:
    r = await get_reaction(session, message_id, user_id, emoji)
    if r is None:
        return None
    await session.execute(delete(MessageReaction).where(MessageReaction.id == r.id))
    return r

async def list_reactions(session, message_ids: Iterable[uuid.UUID]) -> List[MessageReaction]:
    ids = list(set(message_ids))
    if not ids:
        return []
    q = await session.execute(select(MessageReaction).where(MessageReaction.message_id.in_(ids))
                              .order_by(MessageReaction.created_at.asc()))
    return q.scalars().all()


# stories
async def insert_story(session, user_id: uuid.UUID, media_url: str, media_type: str, caption: Optional[str],
                       visibility: str, created_at: datetime, expires_at: datetime) -> Story:
    s = Story(user_id=user_id, media_url=media_url, media_type=media_type, caption=caption,
              visibility=visibility, created_at=created_at, expires_at=expires_at)
    session.add(s)
    await session.flush()
    return s

async def get_story(session, story_id: uuid.UUID) -> Optional[Story]:
    q = await session.execute(select(Story).where(Story.id == story_id))
    return q.scalars().first()

async def list_active_stories(session, now: datetime) -> List[Story]:
    q = await session.execute(select(Story).where(Story.expires_at > now).order_by(Story.created_at.asc()))
    return q.scalars().all()

async def delete_story(session, story_id: uuid.UUID):
    await session.execute(delete(StoryView).where(StoryView.story_id == story_id))
    await session.execute(delete(Story).where(Story.id == story_id))

async def insert_story_view(session, story_id: uuid.UUID, viewer_id: uuid.UUID) -> StoryView:
    v = StoryView(story_id=story_id, viewer_id=viewer_id)
    session.add(v)
    await session.flush()
    return v

async def viewed_story_ids(session, viewer_id: uuid.UUID, story_ids: Iterable[uuid.UUID]) -> set:
    ids = list(set(story_ids))
    if not ids:
        return set()
    q = await session.execute(select(StoryView.story_id).where(
        StoryView.viewer_id == viewer_id, StoryView.story_id.in_(ids)))
    return set(q.scalars().all())

async def list_story_views(session, story_id: uuid.UUID) -> List[StoryView]:
    q = await session.execute(select(StoryView).where(StoryView.story_id == story_id)
                              .order_by(StoryView.viewed_at.asc()))
    return q.scalars().all()

async def soft_delete_message(session, message_id: uuid.UUID, sender_id: uuid.UUID, at: datetime) -> int:
    """Set deleted_at once; later calls and other users match no row"""
    res = await session.execute(update(Message).where(
        Message.id == message_id,
        Message.sender_id == sender_id,
        Message.deleted_at.is_(None),
    ).values(deleted_at=at))
    return res.rowcount

async def set_conversation_theme(session, conversation_id: uuid.UUID, theme: str):
    await session.execute(update(Conversation).where(Conversation.id == conversation_id).values(theme=theme))

async def update_profile_if_cooldown_elapsed(session, user_id: uuid.UUID, cutoff: datetime, at: datetime, **values) -> int:
    """Apply a rate-limited profile change only if the last one happened at or before cutoff"""
    res = await session.execute(update(Profile).where(
        Profile.id == user_id,
        or_(Profile.last_name_change_at.is_(None), Profile.last_name_change_at <= cutoff),
    ).values(last_name_change_at=at, **values))
    return res.rowcount

async def update_presence(session, user_id: uuid.UUID, is_online: bool, at: datetime) -> int:
    res = await session.execute(update(Profile).where(Profile.id == user_id).values(is_online=is_online, last_seen=at))
    return res.rowcount
