"""
Message lifecycle: send, composite media sends, read receipts, soft deletes,
reactions, themes and the conversation list.

A message moves Sent -> Read when another participant opens the conversation,
and Sent|Read -> SoftDeleted when its sender deletes it. Deleted rows stay in
place for replies and reactions, but every rendered form replaces their content
with the tombstone.
"""
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError

from . import crud, storage
from .core import utcnow
from .errors import (
    ChatError,
    Conflict,
    NotFound,
    ValidationError,
    translate_store_errors,
)
from .feed import Operation, feed
from .media import (
    CHAT_MAX_ATTACHMENTS,
    TOMBSTONE,
    Attachment,
    compress_image,
    is_placeholder,
    media_urls,
    plan_batch,
    validate_chat_file,
)
from .metrics import MESSAGES_SENT, UPLOAD_FAILURES
from .models import AsyncSessionLocal, Message, WORLD_CONVERSATION_ID
from .profiles import profile_out
from .schemas.conversations import ConversationOut, ConversationSummaryOut
from .schemas.messages import (
    MessageOut,
    ReactionOut,
    ReactionResultOut,
    ReplyPreviewOut,
    UploadFailureOut,
)

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = int(os.getenv('MAX_MESSAGE_LENGTH', '4000'))
MAX_EMOJI_LENGTH = 16
REPLY_PREVIEW_LENGTH = 50
THEMES = ('default', 'lavender', 'ocean', 'sunset', 'midnight', 'carbon', 'rose', 'emerald')


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    data: bytes


# rendering
def render_reply_preview(target: Message) -> ReplyPreviewOut:
    if target.deleted_at is not None:
        return ReplyPreviewOut(id=target.id, sender_id=target.sender_id, content=TOMBSTONE, deleted=True)
    content = target.content
    if len(content) > REPLY_PREVIEW_LENGTH:
        content = content[:REPLY_PREVIEW_LENGTH] + '...'
    return ReplyPreviewOut(id=target.id, sender_id=target.sender_id, content=content)


def render_message(message: Message, reply_target: Optional[Message] = None) -> MessageOut:
    deleted = message.deleted_at is not None
    return MessageOut(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        content=TOMBSTONE if deleted else message.content,
        media_url=None if deleted else message.media_url,
        media_type=None if deleted else message.media_type,
        media_urls=[] if deleted else media_urls(message.media_url, message.media_type),
        is_read=bool(message.is_read),
        created_at=message.created_at,
        deleted_at=message.deleted_at,
        deleted=deleted,
        show_text=deleted or message.media_type is None or not is_placeholder(message.content),
        reply_to_id=message.reply_to_id,
        reply_to=render_reply_preview(reply_target) if (message.reply_to_id and reply_target is not None) else None,
    )


async def _render_many(session, messages: Sequence[Message]) -> List[MessageOut]:
    targets = {m.id: m for m in await crud.get_messages(session, [m.reply_to_id for m in messages])}
    return [render_message(m, targets.get(m.reply_to_id)) for m in messages]


# access
async def _require_access(session, conversation_id: uuid.UUID, user_id: uuid.UUID):
    conversation = await crud.get_conversation(session, conversation_id)
    if conversation is None or not await crud.can_access_conversation(session, conversation_id, user_id):
        raise NotFound('Conversation not found')
    return conversation


async def _require_visible_message(session, message_id: uuid.UUID, user_id: uuid.UUID) -> Message:
    message = await crud.get_message(session, message_id)
    if message is None or not await crud.can_access_conversation(session, message.conversation_id, user_id):
        raise NotFound('Message not found')
    return message


async def _require_reply_target(session, conversation_id: uuid.UUID, reply_to_id: Optional[uuid.UUID]) -> Optional[Message]:
    if reply_to_id is None:
        return None
    target = await crud.get_message(session, reply_to_id)
    if target is None or target.conversation_id != conversation_id:
        raise NotFound('Replied-to message not found')
    return target


async def _emit_conversation(conversation_id: uuid.UUID):
    async with AsyncSessionLocal() as session:
        conversation = await crud.get_conversation(session, conversation_id)
    if conversation is not None:
        await feed.emit('conversations', Operation.UPDATE,
                        ConversationOut.model_validate(conversation).model_dump(mode='json'))


# sending
def clean_content(content: Optional[str]) -> str:
    content = (content or '').strip()
    if not content:
        raise ValidationError('Message cannot be empty')
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f'Message is longer than {MAX_MESSAGE_LENGTH} characters')
    return content


@translate_store_errors
async def send_message(conversation_id: uuid.UUID, sender_id: uuid.UUID, content: str,
                       reply_to_id: uuid.UUID = None, message_id: uuid.UUID = None) -> MessageOut:
    content = clean_content(content)
    async with AsyncSessionLocal() as session:
        async with session.begin():
            await _require_access(session, conversation_id, sender_id)
            if message_id is not None:
                existing = await crud.get_message(session, message_id)
                if existing is not None:
                    if existing.sender_id != sender_id or existing.conversation_id != conversation_id:
                        raise Conflict('Message id already in use')
                    # retried optimistic send
                    return (await _render_many(session, [existing]))[0]
            reply_target = await _require_reply_target(session, conversation_id, reply_to_id)
            now = utcnow()
            message = await crud.insert_message(session, conversation_id, sender_id, content,
                                                reply_to_id=reply_to_id, message_id=message_id, created_at=now)
            await crud.touch_conversation(session, conversation_id, now)

    out = render_message(message, reply_target)
    MESSAGES_SENT.labels(media_type='text').inc()
    await feed.emit('messages', Operation.INSERT, out.model_dump(mode='json'))
    await _emit_conversation(conversation_id)
    return out


async def _store_attachment(sender_id: uuid.UUID, upload: UploadedFile) -> Attachment:
    validate_chat_file(upload.filename, upload.content_type, len(upload.data))
    data, content_type = compress_image(upload.data, upload.content_type)
    # re-encoded images get the extension of their new format
    filename = upload.filename if content_type == upload.content_type else 'image.jpg'
    path = storage.media_path(sender_id, filename, content_type)
    url = await storage.upload_object(storage.CHAT_MEDIA_BUCKET, path, data, content_type)
    return Attachment(filename=upload.filename, content_type=content_type, url=url)


@translate_store_errors
async def send_attachments(conversation_id: uuid.UUID, sender_id: uuid.UUID, files: Sequence[UploadedFile],
                           caption: str = None, reply_to_id: uuid.UUID = None) -> Tuple[List[MessageOut], List[UploadFailureOut]]:
    """
    Upload files and send them as one batch. A file that fails validation or
    upload is reported by name and skipped; the others still go out.
    """
    if not files:
        raise ValidationError('No files attached')
    if len(files) > CHAT_MAX_ATTACHMENTS:
        raise ValidationError(f'At most {CHAT_MAX_ATTACHMENTS} files can be sent at once')
    caption = (caption or '').strip()
    if len(caption) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f'Caption is longer than {MAX_MESSAGE_LENGTH} characters')

    async with AsyncSessionLocal() as session:
        await _require_access(session, conversation_id, sender_id)
        await _require_reply_target(session, conversation_id, reply_to_id)

    attachments: List[Attachment] = []
    failures: List[UploadFailureOut] = []
    for upload in files:
        try:
            attachments.append(await _store_attachment(sender_id, upload))
        except ChatError as e:
            UPLOAD_FAILURES.labels(bucket=storage.CHAT_MEDIA_BUCKET).inc()
            logger.warning(f"Attachment {upload.filename} failed: {e.message}")
            failures.append(UploadFailureOut(filename=upload.filename, error=e.message))

    drafts = plan_batch(attachments, caption, reply_to_id)
    if not drafts:
        return [], failures

    async with AsyncSessionLocal() as session:
        async with session.begin():
            await _require_access(session, conversation_id, sender_id)
            reply_target = await _require_reply_target(session, conversation_id, reply_to_id)
            base = utcnow()
            stored = []
            for index, draft in enumerate(drafts):
                stored.append(await crud.insert_message(
                    session, conversation_id, sender_id, draft.content,
                    media_url=draft.media_url, media_type=draft.media_type,
                    reply_to_id=draft.reply_to_id,
                    created_at=base + timedelta(microseconds=index),
                ))
            await crud.touch_conversation(session, conversation_id, stored[-1].created_at)

    rendered = [render_message(m, reply_target if m.reply_to_id else None) for m in stored]
    for out in rendered:
        MESSAGES_SENT.labels(media_type=out.media_type or 'text').inc()
        await feed.emit('messages', Operation.INSERT, out.model_dump(mode='json'))
    await _emit_conversation(conversation_id)
    return rendered, failures


# reading
@translate_store_errors
async def list_messages(conversation_id: uuid.UUID, viewer_id: uuid.UUID, limit: int = None,
                        before: datetime = None) -> List[MessageOut]:
    async with AsyncSessionLocal() as session:
        await _require_access(session, conversation_id, viewer_id)
        messages = await crud.list_messages(session, conversation_id, limit=limit, before=before)
        return await _render_many(session, messages)


@translate_store_errors
async def mark_conversation_read(conversation_id: uuid.UUID, viewer_id: uuid.UUID) -> List[MessageOut]:
    """Flip is_read on every message the viewer did not send; safe to repeat"""
    async with AsyncSessionLocal() as session:
        async with session.begin():
            await _require_access(session, conversation_id, viewer_id)
            unread = await crud.list_unread_for_viewer(session, conversation_id, viewer_id)
            for m in unread:
                await crud.update_message(session, m.id, is_read=True)
            rendered = [out.model_copy(update={'is_read': True}) for out in await _render_many(session, unread)]

    for out in rendered:
        await feed.emit('messages', Operation.UPDATE, out.model_dump(mode='json'))
    if rendered:
        logger.debug(f"{viewer_id} read {len(rendered)} messages in {conversation_id}")
    return rendered


@translate_store_errors
async def soft_delete_message(message_id: uuid.UUID, user_id: uuid.UUID, now: datetime = None) -> MessageOut:
    now = now or utcnow()
    async with AsyncSessionLocal() as session:
        async with session.begin():
            message = await _require_visible_message(session, message_id, user_id)
            if message.sender_id != user_id:
                raise NotFound('Message not found')
            changed = await crud.soft_delete_message(session, message_id, user_id, now)
            await session.refresh(message)
            out = (await _render_many(session, [message]))[0]

    if changed:
        logger.info(f"Message {message_id} soft-deleted by {user_id}")
        await feed.emit('messages', Operation.UPDATE, out.model_dump(mode='json'))
    return out


# reactions
def _clean_emoji(emoji: str) -> str:
    emoji = (emoji or '').strip()
    if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
        raise ValidationError('Invalid reaction')
    return emoji


def _reaction_row(reaction, conversation_id: uuid.UUID) -> dict:
    out = ReactionOut.model_validate(reaction).model_copy(update={'conversation_id': conversation_id})
    return out.model_dump(mode='json')


@translate_store_errors
async def react(message_id: uuid.UUID, user_id: uuid.UUID, emoji: str) -> ReactionResultOut:
    """Add a reaction; an existing identical one means "already present", not an error"""
    emoji = _clean_emoji(emoji)
    try:
        async with AsyncSessionLocal() as session:
            async with session.begin():
                message = await _require_visible_message(session, message_id, user_id)
                if message.deleted_at is not None:
                    raise ValidationError('Cannot react to a deleted message')
                if await crud.get_reaction(session, message_id, user_id, emoji) is not None:
                    return ReactionResultOut(present=True, changed=False)
                reaction = await crud.insert_reaction(session, message_id, user_id, emoji)
    except IntegrityError:
        # concurrent duplicate of the same triple
        logger.debug(f"Reaction {emoji} on {message_id} by {user_id} already present")
        return ReactionResultOut(present=True, changed=False)

    await feed.emit('message_reactions', Operation.INSERT, _reaction_row(reaction, message.conversation_id))
    return ReactionResultOut(present=True, changed=True)


@translate_store_errors
async def unreact(message_id: uuid.UUID, user_id: uuid.UUID, emoji: str) -> ReactionResultOut:
    emoji = _clean_emoji(emoji)
    async with AsyncSessionLocal() as session:
        async with session.begin():
            message = await _require_visible_message(session, message_id, user_id)
            removed = await crud.delete_reaction(session, message_id, user_id, emoji)
    if removed is None:
        return ReactionResultOut(present=False, changed=False)
    await feed.emit('message_reactions', Operation.DELETE, _reaction_row(removed, message.conversation_id))
    return ReactionResultOut(present=False, changed=True)


async def set_reaction(message_id: uuid.UUID, user_id: uuid.UUID, emoji: str, present: bool) -> ReactionResultOut:
    """Idempotent membership form of react/unreact"""
    if present:
        return await react(message_id, user_id, emoji)
    return await unreact(message_id, user_id, emoji)


@translate_store_errors
async def list_conversation_reactions(conversation_id: uuid.UUID, viewer_id: uuid.UUID) -> List[ReactionOut]:
    async with AsyncSessionLocal() as session:
        await _require_access(session, conversation_id, viewer_id)
        messages = await crud.list_messages(session, conversation_id)
        reactions = await crud.list_reactions(session, [m.id for m in messages])
    return [ReactionOut.model_validate(r).model_copy(update={'conversation_id': conversation_id}) for r in reactions]


# conversations
@translate_store_errors
async def set_theme(conversation_id: uuid.UUID, user_id: uuid.UUID, theme: str) -> ConversationOut:
    if theme not in THEMES:
        raise ValidationError(f"Unknown theme. Choose one of: {', '.join(THEMES)}")
    async with AsyncSessionLocal() as session:
        async with session.begin():
            conversation = await crud.get_conversation(session, conversation_id)
            if conversation is None or not await crud.is_participant(session, conversation_id, user_id):
                raise NotFound('Conversation not found')
            await crud.set_conversation_theme(session, conversation_id, theme)
            await session.refresh(conversation)
    out = ConversationOut.model_validate(conversation)
    await feed.emit('conversations', Operation.UPDATE, out.model_dump(mode='json'))
    return out


@translate_store_errors
async def get_conversation(conversation_id: uuid.UUID, user_id: uuid.UUID) -> ConversationOut:
    async with AsyncSessionLocal() as session:
        conversation = await _require_access(session, conversation_id, user_id)
    return ConversationOut.model_validate(conversation)


@translate_store_errors
async def list_conversations(user_id: uuid.UUID, now: datetime = None) -> List[ConversationSummaryOut]:
    now = now or utcnow()
    summaries = []
    async with AsyncSessionLocal() as session:
        conversations = await crud.list_user_conversations(session, user_id)
        for conversation in conversations:
            participants: Dict[uuid.UUID, object] = {}
            if conversation.id != WORLD_CONVERSATION_ID:
                ids = [i for i in await crud.list_participant_ids(session, conversation.id) if i != user_id]
                participants = {p.id: p for p in await crud.get_profiles(session, ids)}
            last = await crud.last_message(session, conversation.id)
            summaries.append(ConversationSummaryOut(
                **ConversationOut.model_validate(conversation).model_dump(),
                participants=[profile_out(p, now) for p in participants.values()],
                last_message=(await _render_many(session, [last]))[0] if last else None,
                unread_count=await crud.unread_count(session, conversation.id, user_id),
            ))
    return summaries
