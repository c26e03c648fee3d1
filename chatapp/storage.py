import os
import time
import logging
import uuid
import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from .errors import NotFound, TransientStorageError
from .media import file_extension

logger = logging.getLogger(__name__)

AVATARS_BUCKET = 'avatars'
CHAT_MEDIA_BUCKET = 'chat-media'
STORY_MEDIA_BUCKET = 'story-media'

# S3-compatible endpoint (e.g. the hosted backend's storage gateway); empty means AWS
STORAGE_ENDPOINT_URL = os.getenv('STORAGE_ENDPOINT_URL') or None
STORAGE_PUBLIC_URL = (os.getenv('STORAGE_PUBLIC_URL') or 'http://localhost:9000').rstrip('/')


def _client(session):
    region = os.getenv('STORAGE_REGION') or os.getenv('AWS_REGION', 'us-east-1')
    return session.client('s3', region_name=region,
                          endpoint_url=STORAGE_ENDPOINT_URL,
                          aws_secret_access_key=os.getenv('STORAGE_SECRET_ACCESS_KEY') or os.getenv('AWS_SECRET_ACCESS_KEY'),
                          aws_access_key_id=os.getenv('STORAGE_ACCESS_KEY_ID') or os.getenv('AWS_ACCESS_KEY_ID'),
                          config=Config(signature_version='s3v4'))


def media_path(user_id: uuid.UUID, filename: str, content_type: str = None) -> str:
    """`{userId}/{timestamp}.{ext}`; delete permission hinges on the first segment"""
    return f"{user_id}/{time.time_ns() // 1000}.{file_extension(filename, content_type)}"


def public_url(bucket: str, path: str) -> str:
    return f"{STORAGE_PUBLIC_URL}/{bucket}/{path}"


async def upload_object(bucket: str, path: str, data: bytes, content_type: str) -> str:
    session = aioboto3.Session()
    try:
        async with _client(session) as client:
            await client.put_object(Bucket=bucket, Key=path, Body=data, ContentType=content_type,
                                    CacheControl='max-age=31536000')
    except (ClientError, BotoCoreError) as e:
        logger.warning(f"Upload to {bucket}/{path} failed: {e}")
        raise TransientStorageError('Upload failed, please retry') from e
    return public_url(bucket, path)


async def delete_object(bucket: str, path: str, owner_id: uuid.UUID) -> bool:
    if path.split('/', 1)[0] != str(owner_id):
        raise NotFound('Object not found')
    session = aioboto3.Session()
    try:
        async with _client(session) as client:
            await client.delete_object(Bucket=bucket, Key=path)
            return True
    except (ClientError, BotoCoreError) as e:
        logger.warning(f"Delete of {bucket}/{path} failed: {e}")
        return False


def path_from_url(bucket: str, url: str) -> str:
    prefix = f"{STORAGE_PUBLIC_URL}/{bucket}/"
    return url[len(prefix):] if url.startswith(prefix) else ''
