"""
Ephemeral stories.

A story lives for 24 hours from creation; every read path filters on
now < expires_at, so expired rows are never shown even before cleanup.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from . import crud, storage
from .core import utcnow
from .errors import NotFound, ValidationError, translate_store_errors
from .feed import Operation, feed
from .media import compress_image, media_kind, validate_story_file
from .metrics import UPLOAD_FAILURES
from .models import AsyncSessionLocal, Story
from .schemas.profiles import ProfileSummary
from .schemas.stories import StoryGroupOut, StoryOut, StoryViewerOut

logger = logging.getLogger(__name__)

STORY_TTL = timedelta(hours=24)
VISIBILITIES = ('world', 'friends')
MAX_CAPTION_LENGTH = 500


def is_active(story: Story, now: datetime) -> bool:
    return now < story.expires_at


def filter_stories(stories: List[Story], viewer_id: uuid.UUID, scope: str, friend_ids: set,
                   now: datetime) -> List[Story]:
    """Expiry first, then scope; friends scope keeps the viewer's own and their friends' stories"""
    if scope not in VISIBILITIES:
        raise ValidationError(f"Unknown story scope: {scope}")
    active = [s for s in stories if is_active(s, now)]
    if scope == 'world':
        return [s for s in active if s.visibility == 'world']
    return [s for s in active if s.visibility == 'friends' and (s.user_id == viewer_id or s.user_id in friend_ids)]


def group_stories(stories: List[Story], viewer_id: uuid.UUID, viewed_ids: set,
                  profiles: Dict[uuid.UUID, object] = None) -> List[StoryGroupOut]:
    """
    Group by author keeping creation order, then put the viewer's own group
    first and groups with something unviewed ahead of fully viewed ones.
    Ties keep the order in which authors first appear.
    """
    profiles = profiles or {}
    groups: Dict[uuid.UUID, StoryGroupOut] = {}
    for story in sorted(stories, key=lambda s: s.created_at):
        group = groups.get(story.user_id)
        if group is None:
            profile = profiles.get(story.user_id)
            group = groups[story.user_id] = StoryGroupOut(
                user_id=story.user_id,
                profile=ProfileSummary.model_validate(profile) if profile is not None else None,
            )
        viewed = story.id in viewed_ids
        group.stories.append(StoryOut.model_validate(story).model_copy(update={'has_viewed': viewed}))
        if not viewed and story.user_id != viewer_id:
            group.has_unviewed = True

    ordered = list(groups.values())
    # sorted() is stable, so first-appearance order survives within each rank
    return sorted(ordered, key=lambda g: (g.user_id != viewer_id, not g.has_unviewed))


def _story_visible_to(story: Story, viewer_id: uuid.UUID, friend_ids: set) -> bool:
    if story.user_id == viewer_id or story.visibility == 'world':
        return True
    return story.user_id in friend_ids


@translate_store_errors
async def create_story(user_id: uuid.UUID, filename: str, content_type: str, data: bytes,
                       caption: str = None, visibility: str = 'world', now: datetime = None) -> StoryOut:
    if visibility not in VISIBILITIES:
        raise ValidationError("Visibility must be 'world' or 'friends'")
    caption = (caption or '').strip() or None
    if caption and len(caption) > MAX_CAPTION_LENGTH:
        raise ValidationError(f'Caption is longer than {MAX_CAPTION_LENGTH} characters')
    validate_story_file(filename, content_type, len(data))

    media_type = 'video' if media_kind(content_type) == 'video' else 'image'
    data, stored_type = compress_image(data, content_type)
    path = storage.media_path(user_id, filename if stored_type == content_type else 'story.jpg', stored_type)
    try:
        url = await storage.upload_object(storage.STORY_MEDIA_BUCKET, path, data, stored_type)
    except Exception:
        UPLOAD_FAILURES.labels(bucket=storage.STORY_MEDIA_BUCKET).inc()
        raise

    now = now or utcnow()
    async with AsyncSessionLocal() as session:
        async with session.begin():
            if not await crud.profile_exists(session, user_id):
                raise NotFound('Profile not found')
            story = await crud.insert_story(session, user_id, url, media_type, caption, visibility,
                                            created_at=now, expires_at=now + STORY_TTL)
    out = StoryOut.model_validate(story)
    logger.info(f"Story {story.id} posted by {user_id} ({visibility})")
    await feed.emit('stories', Operation.INSERT, out.model_dump(mode='json'))
    return out


@translate_store_errors
async def list_stories(viewer_id: uuid.UUID, scope: str = 'world', now: datetime = None) -> List[StoryGroupOut]:
    now = now or utcnow()
    async with AsyncSessionLocal() as session:
        friend_ids = await crud.list_friend_ids(session, viewer_id) if scope == 'friends' else set()
        stories = filter_stories(await crud.list_active_stories(session, now), viewer_id, scope, friend_ids, now)
        viewed_ids = await crud.viewed_story_ids(session, viewer_id, [s.id for s in stories])
        profiles = {p.id: p for p in await crud.get_profiles(session, [s.user_id for s in stories])}
    return group_stories(stories, viewer_id, viewed_ids, profiles)


@translate_store_errors
async def view_story(story_id: uuid.UUID, viewer_id: uuid.UUID, now: datetime = None) -> bool:
    """Record a view once; returns False when nothing new was recorded"""
    now = now or utcnow()
    try:
        async with AsyncSessionLocal() as session:
            async with session.begin():
                story = await crud.get_story(session, story_id)
                if story is None or not is_active(story, now):
                    raise NotFound('Story not found')
                friend_ids = await crud.list_friend_ids(session, viewer_id) if story.visibility == 'friends' else set()
                if not _story_visible_to(story, viewer_id, friend_ids):
                    raise NotFound('Story not found')
                if story.user_id == viewer_id:
                    return False
                if story.id in await crud.viewed_story_ids(session, viewer_id, [story.id]):
                    return False
                await crud.insert_story_view(session, story.id, viewer_id)
    except IntegrityError:
        logger.debug(f"Story {story_id} already viewed by {viewer_id}")
        return False
    return True


async def _require_own_story(session, story_id: uuid.UUID, user_id: uuid.UUID) -> Story:
    story = await crud.get_story(session, story_id)
    if story is None or story.user_id != user_id:
        raise NotFound('Story not found')
    return story


@translate_store_errors
async def list_story_viewers(story_id: uuid.UUID, author_id: uuid.UUID) -> List[StoryViewerOut]:
    async with AsyncSessionLocal() as session:
        await _require_own_story(session, story_id, author_id)
        views = await crud.list_story_views(session, story_id)
        profiles = {p.id: p for p in await crud.get_profiles(session, [v.viewer_id for v in views])}
    return [
        StoryViewerOut(
            viewer_id=v.viewer_id,
            viewed_at=v.viewed_at,
            profile=ProfileSummary.model_validate(profiles[v.viewer_id]) if v.viewer_id in profiles else None,
        )
        for v in views
    ]


@translate_store_errors
async def delete_story(story_id: uuid.UUID, user_id: uuid.UUID) -> StoryOut:
    async with AsyncSessionLocal() as session:
        async with session.begin():
            story = await _require_own_story(session, story_id, user_id)
            out = StoryOut.model_validate(story)
            await crud.delete_story(session, story_id)

    media_path: Optional[str] = storage.path_from_url(storage.STORY_MEDIA_BUCKET, story.media_url)
    if media_path.startswith(f"{user_id}/"):
        await storage.delete_object(storage.STORY_MEDIA_BUCKET, media_path, user_id)
    await feed.emit('stories', Operation.DELETE, out.model_dump(mode='json'))
    return out
