"""
HTTP client for the chat API.

Sends never wait on realtime subscriptions: an optimistic send shows the
message locally, posts it, and then either confirms it with the stored copy
or takes it back out and re-raises so the caller can restore the draft.
"""
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from jose import jwt, JWTError

from .errors import (
    ERRORS_BY_KIND,
    ChatError,
    Conflict,
    CooldownActive,
    NotFound,
    RateLimited,
    TransientStorageError,
    Unauthenticated,
    ValidationError,
)
from .sync import MessageList

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = float(os.getenv('CHATAPP_HTTP_TIMEOUT', '10'))

ERRORS_BY_STATUS = {
    400: ValidationError,
    401: Unauthenticated,
    403: Unauthenticated,
    404: NotFound,
    409: Conflict,
    422: ValidationError,
    429: RateLimited,
    503: TransientStorageError,
}


def error_from_response(response: httpx.Response) -> ChatError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    detail = body.get('detail')
    message = detail if isinstance(detail, str) else (str(detail) if detail else response.reason_phrase)
    cls = ERRORS_BY_KIND.get(body.get('error')) or ERRORS_BY_STATUS.get(response.status_code)
    if cls is None:
        cls = TransientStorageError if response.status_code >= 500 else ValidationError
    if cls in (CooldownActive, RateLimited):
        retry_after = response.headers.get('Retry-After')
        return cls(message, retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None)
    return cls(message)


class ChatClient:
    def __init__(self, base_url: str, token: str, timeout: float = None, transport: httpx.AsyncBaseTransport = None):
        self.token = token
        try:
            self.user_id = uuid.UUID(str(jwt.get_unverified_claims(token)['sub']))
        except (JWTError, KeyError, ValueError):
            raise Unauthenticated('Token has no usable subject')
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip('/') + '/api',
            headers={'Authorization': f'Bearer {token}'},
            timeout=httpx.Timeout(timeout or HTTP_TIMEOUT),
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self._http.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {url} timed out")
            raise TransientStorageError('Request timed out, please retry') from e
        except httpx.TransportError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise TransientStorageError('Network error, please retry') from e
        if response.status_code >= 400:
            raise error_from_response(response)
        return response.json()

    # profiles
    async def provision(self, username: str = None, full_name: str = None) -> Dict:
        return await self._request('POST', '/profiles/me', json={'username': username, 'full_name': full_name})

    async def me(self) -> Dict:
        return await self._request('GET', '/profiles/me')

    async def get_profile(self, user_id) -> Dict:
        return await self._request('GET', f'/profiles/{user_id}')

    async def search_profiles(self, query: str) -> List[Dict]:
        return await self._request('GET', '/profiles/search', params={'q': query})

    async def update_display_name(self, full_name: str) -> Dict:
        return await self._request('PUT', '/profiles/me/name', json={'full_name': full_name})

    async def update_username(self, username: str) -> Dict:
        return await self._request('PUT', '/profiles/me/username', json={'username': username})

    # conversations
    async def open_private_conversation(self, other_id) -> uuid.UUID:
        body = await self._request('POST', '/conversations/private', json={'user_id': str(other_id)})
        return uuid.UUID(body['conversation_id'])

    async def list_conversations(self) -> List[Dict]:
        return await self._request('GET', '/conversations/')

    async def list_messages(self, conversation_id, limit: int = None, before: datetime = None) -> List[Dict]:
        params = {}
        if limit:
            params['limit'] = limit
        if before:
            params['before'] = before.isoformat()
        return await self._request('GET', f'/conversations/{conversation_id}/messages', params=params)

    async def list_reactions(self, conversation_id) -> List[Dict]:
        return await self._request('GET', f'/conversations/{conversation_id}/reactions')

    async def mark_read(self, conversation_id) -> List[Dict]:
        return await self._request('POST', f'/conversations/{conversation_id}/read')

    async def set_theme(self, conversation_id, theme: str) -> Dict:
        return await self._request('PUT', f'/conversations/{conversation_id}/theme', json={'theme': theme})

    # messages
    async def send_message(self, conversation_id, content: str, reply_to_id=None, message_id=None) -> Dict:
        payload = {
            'content': content,
            'reply_to_id': str(reply_to_id) if reply_to_id else None,
            'id': str(message_id) if message_id else None,
        }
        return await self._request('POST', f'/messages/{conversation_id}', json=payload)

    async def send_optimistic(self, conversation_id, content: str, reply_to_id=None,
                              messages: Optional[MessageList] = None, message_id=None) -> Dict:
        """
        Show the message immediately, then confirm or roll back.

        Pass the `message_id` of a failed attempt to retry it; the server
        returns the stored row instead of creating a second message.
        """
        message_id = message_id or uuid.uuid4()
        if messages is not None:
            messages.add_pending({
                'id': str(message_id),
                'conversation_id': str(conversation_id),
                'sender_id': str(self.user_id),
                'content': content.strip(),
                'media_url': None,
                'media_type': None,
                'media_urls': [],
                'is_read': False,
                'created_at': datetime.now(timezone.utc).isoformat(),
                'deleted_at': None,
                'deleted': False,
                'show_text': True,
                'reply_to_id': str(reply_to_id) if reply_to_id else None,
                'reply_to': None,
            })
        try:
            row = await self.send_message(conversation_id, content, reply_to_id, message_id)
        except ChatError:
            if messages is not None:
                messages.rollback(message_id)
            raise
        if messages is not None:
            messages.confirm(row)
        return row

    async def send_attachments(self, conversation_id, files: Sequence[Tuple[str, bytes, str]],
                               caption: str = None, reply_to_id=None) -> Dict:
        """files are (filename, data, content_type) triples"""
        data = {}
        if caption:
            data['caption'] = caption
        if reply_to_id:
            data['reply_to_id'] = str(reply_to_id)
        return await self._request('POST', f'/messages/{conversation_id}/attachments',
                                   files=[('files', f) for f in files], data=data)

    async def delete_message(self, message_id) -> Dict:
        return await self._request('DELETE', f'/messages/{message_id}')

    async def set_reaction(self, message_id, emoji: str, present: bool = True) -> Dict:
        return await self._request('PUT', f'/messages/{message_id}/reactions',
                                   json={'emoji': emoji, 'present': present})

    # stories
    async def create_story(self, filename: str, data: bytes, content_type: str,
                           caption: str = None, visibility: str = 'world') -> Dict:
        form = {'visibility': visibility}
        if caption:
            form['caption'] = caption
        return await self._request('POST', '/stories/', files={'file': (filename, data, content_type)}, data=form)

    async def list_stories(self, scope: str = 'world') -> List[Dict]:
        return await self._request('GET', '/stories/', params={'scope': scope})

    async def view_story(self, story_id) -> Dict:
        return await self._request('POST', f'/stories/{story_id}/view')

    async def story_viewers(self, story_id) -> List[Dict]:
        return await self._request('GET', f'/stories/{story_id}/viewers')

    async def delete_story(self, story_id) -> Dict:
        return await self._request('DELETE', f'/stories/{story_id}')
