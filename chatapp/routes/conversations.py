import uuid
import logging
from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from datetime import datetime
from ..schemas.conversations import (
    PrivateConversationIn,
    ConversationIdOut,
    ConversationOut,
    ConversationSummaryOut,
    ThemeIn,
)
from ..schemas.messages import MessageOut, ReactionOut
from ..resolver import get_or_create_private_conversation
from .. import messaging
from ..auth import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()

@router.post('/private', response_model=ConversationIdOut)
async def open_private(payload: PrivateConversationIn, current_user: dict = Depends(get_current_user)):
    conversation_id = await get_or_create_private_conversation(current_user['id'], payload.user_id)
    return ConversationIdOut(conversation_id=conversation_id)

@router.get('/', response_model=List[ConversationSummaryOut])
async def list_mine(current_user: dict = Depends(get_current_user)):
    return await messaging.list_conversations(current_user['id'])

@router.get('/{conversation_id}', response_model=ConversationOut)
async def get_one(conversation_id: uuid.UUID, current_user: dict = Depends(get_current_user)):
    return await messaging.get_conversation(conversation_id, current_user['id'])

@router.get('/{conversation_id}/messages', response_model=List[MessageOut])
async def messages(conversation_id: uuid.UUID,
                   limit: Optional[int] = Query(None, ge=1, le=500),
                   before: Optional[datetime] = None,
                   current_user: dict = Depends(get_current_user)):
    return await messaging.list_messages(conversation_id, current_user['id'], limit=limit, before=before)

@router.get('/{conversation_id}/reactions', response_model=List[ReactionOut])
async def reactions(conversation_id: uuid.UUID, current_user: dict = Depends(get_current_user)):
    return await messaging.list_conversation_reactions(conversation_id, current_user['id'])

@router.post('/{conversation_id}/read', response_model=List[MessageOut])
async def mark_read(conversation_id: uuid.UUID, current_user: dict = Depends(get_current_user)):
    return await messaging.mark_conversation_read(conversation_id, current_user['id'])

@router.put('/{conversation_id}/theme', response_model=ConversationOut)
async def set_theme(conversation_id: uuid.UUID, payload: ThemeIn, current_user: dict = Depends(get_current_user)):
    logger.info({'msg': 'theme_change', 'conversation_id': str(conversation_id), 'theme': payload.theme})
    return await messaging.set_theme(conversation_id, current_user['id'], payload.theme)
