"""
Profiles, presence and the world conversation bootstrap.
"""
import logging
import os
import re
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from . import crud, storage
from .cache import cache_profile, get_cached_profile, invalidate_profile_cache
from .core import utcnow
from .errors import CooldownActive, NotFound, ValidationError, translate_store_errors
from .feed import Operation, feed
from .media import compress_image, validate_avatar_file
from .metrics import UPLOAD_FAILURES
from .models import AsyncSessionLocal, Conversation, Profile, WORLD_CONVERSATION_ID
from .schemas.profiles import ProfileOut

logger = logging.getLogger(__name__)

WORLD_CONVERSATION_NAME = 'World Chat'
DEFAULT_AVATAR_URL = 'https://api.dicebear.com/7.x/avataaars/svg?seed={user_id}'
NAME_CHANGE_COOLDOWN = timedelta(hours=12)
PRESENCE_TTL_SECONDS = int(os.getenv('PRESENCE_TTL_SECONDS', '90'))
MAX_NAME_LENGTH = 100
USERNAME_RE = re.compile(r'^[A-Za-z0-9_.]{3,30}$')


def is_present(profile: Profile, now: datetime = None) -> bool:
    """Online flag plus a heartbeat inside the TTL; stale flags read as offline"""
    if not profile.is_online or profile.last_seen is None:
        return False
    now = now or utcnow()
    return (now - profile.last_seen).total_seconds() < PRESENCE_TTL_SECONDS


def profile_out(profile: Profile, now: datetime = None) -> ProfileOut:
    return ProfileOut.model_validate(profile).model_copy(update={'online': is_present(profile, now)})


async def _emit_profile(profile: Profile, now: datetime = None):
    await invalidate_profile_cache(profile.id)
    await feed.emit('profiles', Operation.UPDATE, profile_out(profile, now).model_dump(mode='json'))


# world conversation
async def ensure_world_conversation(session) -> Conversation:
    world = await crud.get_conversation(session, WORLD_CONVERSATION_ID)
    if world is None:
        world = await crud.create_conversation(session, WORLD_CONVERSATION_ID, is_group=True,
                                               name=WORLD_CONVERSATION_NAME)
        logger.info("World conversation created")
    return world


async def bootstrap_world_conversation():
    """Idempotent startup step"""
    try:
        async with AsyncSessionLocal() as session:
            async with session.begin():
                await ensure_world_conversation(session)
    except IntegrityError:
        logger.info("World conversation already created by another instance")


# provisioning
@translate_store_errors
async def provision_profile(user_id: uuid.UUID, username: str = None, full_name: str = None) -> ProfileOut:
    """Create the profile on first sign-in and join the world chat; repeat calls return it unchanged"""
    username = (username or '').strip() or None
    full_name = (full_name or '').strip() or None
    if username and not USERNAME_RE.match(username):
        raise ValidationError('Username must be 3-30 letters, digits, dots or underscores')
    if full_name and len(full_name) > MAX_NAME_LENGTH:
        raise ValidationError(f'Name is longer than {MAX_NAME_LENGTH} characters')

    try:
        async with AsyncSessionLocal() as session:
            async with session.begin():
                await ensure_world_conversation(session)
                profile = await crud.get_profile(session, user_id)
                if profile is None:
                    if username and await crud.username_taken(session, username):
                        raise ValidationError('Username is already taken')
                    now = utcnow()
                    profile = Profile(id=user_id, username=username, full_name=full_name,
                                      avatar_url=DEFAULT_AVATAR_URL.format(user_id=user_id),
                                      created_at=now, updated_at=now, last_seen=now)
                    session.add(profile)
                    await session.flush()
                    logger.info(f"Provisioned profile {user_id}")
                if not await crud.is_participant(session, WORLD_CONVERSATION_ID, user_id):
                    await crud.add_participant(session, WORLD_CONVERSATION_ID, user_id)
    except IntegrityError:
        # a concurrent first sign-in won the race
        async with AsyncSessionLocal() as session:
            profile = await crud.get_profile(session, user_id)
        if profile is None:
            raise
    return profile_out(profile)


# reads
@translate_store_errors
async def get_profile(user_id: uuid.UUID, now: datetime = None) -> ProfileOut:
    cached = await get_cached_profile(user_id)
    if cached:
        out = ProfileOut.model_validate(cached)
        # presence decays with time, so recompute from the cached heartbeat
        present = bool(cached.get('is_online')) and out.last_seen is not None and \
            ((now or utcnow()) - out.last_seen).total_seconds() < PRESENCE_TTL_SECONDS
        return out.model_copy(update={'online': present})
    async with AsyncSessionLocal() as session:
        profile = await crud.get_profile(session, user_id)
    if profile is None:
        raise NotFound('Profile not found')
    out = profile_out(profile, now)
    await cache_profile(user_id, {**out.model_dump(mode='json'), 'is_online': bool(profile.is_online)})
    return out


@translate_store_errors
async def search_profiles(viewer_id: uuid.UUID, query: str, now: datetime = None) -> List[ProfileOut]:
    query = (query or '').strip()
    if not query:
        return []
    async with AsyncSessionLocal() as session:
        profiles = await crud.search_profiles(session, viewer_id, query)
    return [profile_out(p, now) for p in profiles]


# rate-limited changes
async def _apply_rate_limited_change(user_id: uuid.UUID, now: datetime, **values) -> Profile:
    try:
        profile = await _write_rate_limited_change(user_id, now, **values)
    except IntegrityError:
        if 'username' not in values:
            raise
        # lost a race for the same username after the availability check
        raise ValidationError('Username is already taken')
    await _emit_profile(profile, now)
    return profile


async def _write_rate_limited_change(user_id: uuid.UUID, now: datetime, **values) -> Profile:
    async with AsyncSessionLocal() as session:
        async with session.begin():
            profile = await crud.get_profile(session, user_id)
            if profile is None:
                raise NotFound('Profile not found')
            if 'username' in values and await crud.username_taken(session, values['username'], exclude_id=user_id):
                raise ValidationError('Username is already taken')
            changed = await crud.update_profile_if_cooldown_elapsed(
                session, user_id, now - NAME_CHANGE_COOLDOWN, now, updated_at=now, **values)
            if not changed:
                await session.refresh(profile)
                retry_after = None
                if profile.last_name_change_at is not None:
                    retry_after = max(1, int((profile.last_name_change_at + NAME_CHANGE_COOLDOWN - now).total_seconds()))
                raise CooldownActive('You can only change your name once every 12 hours', retry_after=retry_after)
            await session.refresh(profile)
    return profile


@translate_store_errors
async def update_display_name(user_id: uuid.UUID, full_name: str, now: datetime = None) -> ProfileOut:
    full_name = (full_name or '').strip()
    if not full_name:
        raise ValidationError('Name cannot be empty')
    if len(full_name) > MAX_NAME_LENGTH:
        raise ValidationError(f'Name is longer than {MAX_NAME_LENGTH} characters')
    now = now or utcnow()
    profile = await _apply_rate_limited_change(user_id, now, full_name=full_name)
    logger.info(f"Display name changed for {user_id}")
    return profile_out(profile, now)


@translate_store_errors
async def update_username(user_id: uuid.UUID, username: str, now: datetime = None) -> ProfileOut:
    username = (username or '').strip()
    if not USERNAME_RE.match(username):
        raise ValidationError('Username must be 3-30 letters, digits, dots or underscores')
    now = now or utcnow()
    profile = await _apply_rate_limited_change(user_id, now, username=username)
    logger.info(f"Username changed for {user_id}")
    return profile_out(profile, now)


@translate_store_errors
async def update_avatar(user_id: uuid.UUID, filename: str, content_type: str, data: bytes) -> ProfileOut:
    validate_avatar_file(filename, content_type, len(data))
    data, content_type = compress_image(data, content_type)
    path = storage.media_path(user_id, filename if content_type != 'image/jpeg' else 'avatar.jpg', content_type)
    try:
        url = await storage.upload_object(storage.AVATARS_BUCKET, path, data, content_type)
    except Exception:
        UPLOAD_FAILURES.labels(bucket=storage.AVATARS_BUCKET).inc()
        raise

    async with AsyncSessionLocal() as session:
        async with session.begin():
            profile = await crud.get_profile(session, user_id)
            if profile is None:
                raise NotFound('Profile not found')
            old_url = profile.avatar_url
            profile.avatar_url = url
            profile.updated_at = utcnow()

    old_path = storage.path_from_url(storage.AVATARS_BUCKET, old_url or '')
    if old_path and old_path.startswith(f"{user_id}/"):
        await storage.delete_object(storage.AVATARS_BUCKET, old_path, user_id)
    await _emit_profile(profile)
    return profile_out(profile)


# presence
async def _set_presence(user_id: uuid.UUID, online: bool, now: datetime) -> Optional[Profile]:
    async with AsyncSessionLocal() as session:
        async with session.begin():
            if not await crud.update_presence(session, user_id, online, now):
                return None
            profile = await crud.get_profile(session, user_id)
    await _emit_profile(profile, now)
    return profile


@translate_store_errors
async def heartbeat(user_id: uuid.UUID, now: datetime = None) -> bool:
    now = now or utcnow()
    return await _set_presence(user_id, True, now) is not None


@translate_store_errors
async def go_offline(user_id: uuid.UUID, now: datetime = None) -> bool:
    now = now or utcnow()
    return await _set_presence(user_id, False, now) is not None
