import uuid
from fastapi import APIRouter, Depends, File, Form, UploadFile, Query
from ..schemas.stories import StoryOut, StoryGroupOut, StoryViewerOut
from ..schemas.profiles import ActionOkOut
from .. import stories
from ..cache import check_rate_limit
from ..errors import RateLimited
from ..auth import get_current_user
from typing import List, Optional

router = APIRouter()

@router.post('/', response_model=StoryOut)
async def create(file: UploadFile = File(...),
                 caption: Optional[str] = Form(None),
                 visibility: str = Form('world'),
                 current_user: dict = Depends(get_current_user)):
    # Rate limiting - max 30 stories per hour
    if not await check_rate_limit(current_user['id'], "story_upload", limit=30, window=3600):
        raise RateLimited("Rate limit exceeded. Too many uploads.", retry_after=3600)
    data = await file.read()
    return await stories.create_story(current_user['id'], file.filename, file.content_type, data,
                                      caption=caption, visibility=visibility)

@router.get('/', response_model=List[StoryGroupOut])
async def list_feed(scope: str = Query('world'), current_user: dict = Depends(get_current_user)):
    return await stories.list_stories(current_user['id'], scope)

@router.post('/{story_id}/view', response_model=ActionOkOut)
async def view(story_id: uuid.UUID, current_user: dict = Depends(get_current_user)):
    recorded = await stories.view_story(story_id, current_user['id'])
    return ActionOkOut(message='View recorded' if recorded else 'Already viewed')

@router.get('/{story_id}/viewers', response_model=List[StoryViewerOut])
async def viewers(story_id: uuid.UUID, current_user: dict = Depends(get_current_user)):
    return await stories.list_story_viewers(story_id, current_user['id'])

@router.delete('/{story_id}', response_model=StoryOut)
async def delete(story_id: uuid.UUID, current_user: dict = Depends(get_current_user)):
    return await stories.delete_story(story_id, current_user['id'])
