import os
import uuid
from fastapi import APIRouter, Depends, File, Form, UploadFile
from typing import List, Optional
from ..schemas.messages import (
    MessageIn,
    MessageOut,
    ReactionIn,
    ReactionResultOut,
    AttachmentBatchOut,
)
from .. import messaging
from ..messaging import UploadedFile
from ..cache import check_rate_limit
from ..errors import RateLimited
from ..auth import get_current_user

router = APIRouter()

MESSAGE_RATE_LIMIT = int(os.getenv('MESSAGE_RATE_LIMIT', '100'))

async def _enforce_send_limit(user_id: uuid.UUID):
    # max MESSAGE_RATE_LIMIT sends per hour
    if not await check_rate_limit(user_id, "send_message", limit=MESSAGE_RATE_LIMIT, window=3600):
        raise RateLimited("Rate limit exceeded. Too many messages.", retry_after=3600)

@router.post('/{conversation_id}', response_model=MessageOut)
async def send(conversation_id: uuid.UUID, payload: MessageIn, current_user: dict = Depends(get_current_user)):
    await _enforce_send_limit(current_user['id'])
    return await messaging.send_message(conversation_id, current_user['id'], payload.content,
                                        reply_to_id=payload.reply_to_id, message_id=payload.id)

@router.post('/{conversation_id}/attachments', response_model=AttachmentBatchOut)
async def send_attachments(conversation_id: uuid.UUID,
                           files: List[UploadFile] = File(...),
                           caption: Optional[str] = Form(None),
                           reply_to_id: Optional[uuid.UUID] = Form(None),
                           current_user: dict = Depends(get_current_user)):
    await _enforce_send_limit(current_user['id'])
    uploads = [UploadedFile(f.filename, f.content_type, await f.read()) for f in files]
    sent, failures = await messaging.send_attachments(conversation_id, current_user['id'], uploads,
                                                      caption=caption, reply_to_id=reply_to_id)
    return AttachmentBatchOut(messages=sent, failures=failures)

@router.delete('/{message_id}', response_model=MessageOut)
async def soft_delete(message_id: uuid.UUID, current_user: dict = Depends(get_current_user)):
    return await messaging.soft_delete_message(message_id, current_user['id'])

@router.put('/{message_id}/reactions', response_model=ReactionResultOut)
async def set_reaction(message_id: uuid.UUID, payload: ReactionIn, current_user: dict = Depends(get_current_user)):
    return await messaging.set_reaction(message_id, current_user['id'], payload.emoji, payload.present)
