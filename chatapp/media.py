"""
Media rules for chat and stories: attachment fan-out, placeholder labels,
upload validation and image compression.
"""
import io
import json
import logging
import os
import uuid
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

from .errors import ValidationError

logger = logging.getLogger(__name__)

TOMBSTONE = '🚫 This message was deleted'

PLACEHOLDERS = {
    'image': '📷 Photo',
    'gallery': '📷 Photos',
    'video': '🎥 Video',
    'document': '📎 File',
}
MEDIA_KINDS = set(PLACEHOLDERS)

CHAT_MAX_FILE_SIZE = 20 * 1024 * 1024  # 20MB
CHAT_MAX_ATTACHMENTS = 10
STORY_MAX_FILE_SIZE = 50 * 1024 * 1024  # 50MB
STORY_CONTENT_TYPES = {
    'image/jpeg', 'image/png', 'image/gif', 'image/webp',
    'video/mp4', 'video/quicktime', 'video/webm',
}
AVATAR_MAX_FILE_SIZE = 5 * 1024 * 1024  # 5MB
AVATAR_CONTENT_TYPES = {'image/jpeg', 'image/png', 'image/webp', 'image/gif'}

MAX_IMAGE_DIMENSIONS = (1280, 1280)
JPEG_QUALITY = 80


@dataclass(frozen=True)
class Attachment:
    """An uploaded file, already stored, waiting to become part of a message"""
    filename: str
    content_type: str
    url: str

    @property
    def kind(self) -> str:
        return media_kind(self.content_type)


@dataclass(frozen=True)
class MessageDraft:
    content: str
    media_type: str
    media_url: str
    reply_to_id: Optional[uuid.UUID] = None


def media_kind(content_type: Optional[str]) -> str:
    content_type = (content_type or '').lower()
    if content_type.startswith('image/'):
        return 'image'
    if content_type.startswith('video/'):
        return 'video'
    return 'document'


def is_placeholder(content: Optional[str]) -> bool:
    return content in PLACEHOLDERS.values()


def media_urls(media_url: Optional[str], media_type: Optional[str]) -> List[str]:
    if not media_url:
        return []
    if media_type == 'gallery':
        try:
            urls = json.loads(media_url)
        except ValueError:
            logger.warning("Gallery media_url is not a JSON list")
            return []
        return [u for u in urls if isinstance(u, str)]
    return [media_url]


def plan_batch(attachments: Sequence[Attachment], caption: Optional[str] = None,
               reply_to_id: Optional[uuid.UUID] = None) -> List[MessageDraft]:
    """
    Fan one composite send out into messages.

    Images collapse into a single message (a gallery when there is more than one),
    every other attachment becomes its own message. The caption lands on the image
    message, or on the first other message when no image was attached; the rest
    carry the placeholder for their kind. Only the first message keeps the reply link.
    """
    if not attachments:
        return []
    caption = (caption or '').strip()
    images = [a for a in attachments if a.kind == 'image']
    others = [a for a in attachments if a.kind != 'image']

    planned: List[Tuple[str, str]] = []  # (media_type, media_url)
    if len(images) == 1:
        planned.append(('image', images[0].url))
    elif images:
        planned.append(('gallery', json.dumps([a.url for a in images])))
    for a in others:
        planned.append((a.kind, a.url))

    drafts = []
    for index, (kind, url) in enumerate(planned):
        content = caption if (index == 0 and caption) else PLACEHOLDERS[kind]
        drafts.append(MessageDraft(
            content=content,
            media_type=kind,
            media_url=url,
            reply_to_id=reply_to_id if index == 0 else None,
        ))
    return drafts


def file_extension(filename: str, content_type: Optional[str] = None) -> str:
    ext = os.path.splitext(filename or '')[1].lower().lstrip('.')
    if ext:
        return ext
    if content_type and '/' in content_type:
        return content_type.split('/', 1)[1].split('+')[0]
    return 'bin'


def validate_chat_file(filename: str, content_type: Optional[str], size: int):
    if not filename:
        raise ValidationError('File has no name')
    if size <= 0:
        raise ValidationError(f'{filename} is empty')
    if size > CHAT_MAX_FILE_SIZE:
        raise ValidationError(f'{filename} is too large. Max size is 20MB')


def validate_story_file(filename: str, content_type: Optional[str], size: int):
    if content_type not in STORY_CONTENT_TYPES:
        raise ValidationError('Please select an image or video file')
    if size > STORY_MAX_FILE_SIZE:
        raise ValidationError('File size must be under 50MB')


def validate_avatar_file(filename: str, content_type: Optional[str], size: int):
    if content_type not in AVATAR_CONTENT_TYPES:
        raise ValidationError(f"Invalid file type. Allowed: {', '.join(sorted(AVATAR_CONTENT_TYPES))}")
    if size > AVATAR_MAX_FILE_SIZE:
        raise ValidationError('File too large. Max size is 5MB')


def compress_image(data: bytes, content_type: Optional[str]) -> Tuple[bytes, str]:
    """Downscale and re-encode images as JPEG; keep the original when that does not help"""
    if media_kind(content_type) != 'image' or content_type == 'image/gif':
        return data, content_type
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.mode != 'RGB':
                img = img.convert('RGB')
            img.thumbnail(MAX_IMAGE_DIMENSIONS, Image.Resampling.LANCZOS)
            output = io.BytesIO()
            img.save(output, format='JPEG', quality=JPEG_QUALITY, optimize=True)
    except (UnidentifiedImageError, OSError) as e:
        logger.info(f"Image compression skipped: {e}")
        return data, content_type
    compressed = output.getvalue()
    if len(compressed) >= len(data):
        return data, content_type
    return compressed, 'image/jpeg'
