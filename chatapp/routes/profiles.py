"""
Profile Routes
Provisioning, lookup, search, rate-limited name changes and avatar upload
"""

import uuid
from fastapi import APIRouter, Depends, File, UploadFile, Query
from typing import List
from ..schemas.profiles import ProfileOut, ProvisionIn, NameUpdateIn, UsernameUpdateIn
from .. import profiles
from ..auth import get_current_user
from ..cache import check_rate_limit
from ..errors import RateLimited

router = APIRouter()

@router.post('/me', response_model=ProfileOut)
async def provision(payload: ProvisionIn, current_user: dict = Depends(get_current_user)):
    """Create the caller's profile on first sign-in; idempotent"""
    return await profiles.provision_profile(current_user['id'], payload.username, payload.full_name)

@router.get('/me', response_model=ProfileOut)
async def me(current_user: dict = Depends(get_current_user)):
    return await profiles.get_profile(current_user['id'])

@router.get('/search', response_model=List[ProfileOut])
async def search(q: str = Query('', max_length=100), current_user: dict = Depends(get_current_user)):
    return await profiles.search_profiles(current_user['id'], q)

@router.get('/{user_id}', response_model=ProfileOut)
async def get_one(user_id: uuid.UUID, current_user: dict = Depends(get_current_user)):
    return await profiles.get_profile(user_id)

@router.put('/me/name', response_model=ProfileOut)
async def update_name(payload: NameUpdateIn, current_user: dict = Depends(get_current_user)):
    return await profiles.update_display_name(current_user['id'], payload.full_name)

@router.put('/me/username', response_model=ProfileOut)
async def update_username(payload: UsernameUpdateIn, current_user: dict = Depends(get_current_user)):
    return await profiles.update_username(current_user['id'], payload.username)

@router.post('/me/avatar', response_model=ProfileOut)
async def upload_avatar(file: UploadFile = File(...), current_user: dict = Depends(get_current_user)):
    """Upload and set the caller's avatar"""
    # Rate limiting - max 5 uploads per hour
    if not await check_rate_limit(current_user['id'], "avatar_upload", limit=5, window=3600):
        raise RateLimited("Rate limit exceeded. Too many uploads.", retry_after=3600)
    data = await file.read()
    return await profiles.update_avatar(current_user['id'], file.filename, file.content_type, data)

@router.post('/me/heartbeat', response_model=ProfileOut)
async def heartbeat(current_user: dict = Depends(get_current_user)):
    await profiles.heartbeat(current_user['id'])
    return await profiles.get_profile(current_user['id'])
