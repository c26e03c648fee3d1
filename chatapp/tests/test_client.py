import json
import uuid

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from chatapp.auth import create_access_token
from chatapp.client import ChatClient, error_from_response
from chatapp.errors import (
    CooldownActive,
    NotFound,
    RateLimited,
    TransientStorageError,
    Unauthenticated,
    ValidationError,
)
from chatapp.feed import ChangeEvent, Operation
from chatapp.main import app
from chatapp.sync import MessageList


def token_for(user_id):
    return create_access_token({'sub': user_id})


@pytest_asyncio.fixture
async def clients(db):
    opened = []

    async def _client(username):
        client = ChatClient('http://test', token_for(uuid.uuid4()), transport=ASGITransport(app=app))
        opened.append(client)
        await client.provision(username=username)
        return client

    yield _client
    for client in opened:
        await client.aclose()


@pytest.mark.asyncio
async def test_optimistic_send_is_confirmed(clients):
    alice = await clients('alice')
    bob = await clients('bob')
    conv = await alice.open_private_conversation(bob.user_id)
    messages = MessageList(conv)

    row = await alice.send_optimistic(conv, ' hello ', messages=messages)

    assert messages.pending_ids == []
    assert messages.ids == [row['id']]
    assert messages.get(row['id'])['content'] == 'hello'
    listed = await bob.list_messages(conv)
    assert [m['id'] for m in listed] == [row['id']]


@pytest.mark.asyncio
async def test_failed_optimistic_send_rolls_back(clients):
    alice = await clients('alice')
    bob = await clients('bob')
    carol = await clients('carol')
    conv = await bob.open_private_conversation(carol.user_id)
    messages = MessageList(conv)

    with pytest.raises(NotFound):
        await alice.send_optimistic(conv, 'intruding', messages=messages)
    assert len(messages) == 0

    own = await alice.open_private_conversation(bob.user_id)
    own_messages = MessageList(own)
    with pytest.raises(ValidationError):
        await alice.send_optimistic(own, '   ', messages=own_messages)
    assert len(own_messages) == 0


@pytest.mark.asyncio
async def test_client_covers_reactions_and_themes(clients):
    alice = await clients('alice')
    bob = await clients('bob')
    conv = await alice.open_private_conversation(bob.user_id)
    row = await alice.send_message(conv, 'react please')

    assert (await bob.set_reaction(row['id'], '😂'))['changed'] is True
    assert (await bob.set_reaction(row['id'], '😂', present=False))['present'] is False
    assert (await alice.set_theme(conv, 'midnight'))['theme'] == 'midnight'
    summaries = await bob.list_conversations()
    assert summaries[0]['theme'] == 'midnight'


def test_rejects_token_without_subject():
    with pytest.raises(Unauthenticated):
        ChatClient('http://test', 'not-a-token')


@pytest.mark.asyncio
async def test_timeouts_become_transient_errors():
    def handler(request):
        raise httpx.ReadTimeout('slow', request=request)

    client = ChatClient('http://test', token_for(uuid.uuid4()), timeout=0.1, transport=httpx.MockTransport(handler))
    with pytest.raises(TransientStorageError):
        await client.me()
    await client.aclose()


def test_error_mapping_from_responses():
    cooldown = httpx.Response(429, json={'detail': 'wait', 'error': 'cooldown_active'}, headers={'Retry-After': '120'})
    err = error_from_response(cooldown)
    assert isinstance(err, CooldownActive)
    assert err.retry_after == 120

    assert isinstance(error_from_response(httpx.Response(404, json={'detail': 'gone'})), NotFound)
    assert isinstance(error_from_response(httpx.Response(503, text='down')), TransientStorageError)
    assert isinstance(error_from_response(httpx.Response(502, text='bad gateway')), TransientStorageError)
    assert isinstance(error_from_response(httpx.Response(422, json={'detail': [{'msg': 'bad'}]})), ValidationError)


@pytest.mark.asyncio
async def test_echo_before_timeout_keeps_stored_message():
    conv = uuid.uuid4()
    user_id = uuid.uuid4()
    messages = MessageList(conv)

    def handler(request):
        body = json.loads(request.content)
        # the realtime echo lands, then the HTTP response is lost
        messages.apply(ChangeEvent('messages', Operation.INSERT, {
            'id': body['id'], 'conversation_id': str(conv), 'sender_id': str(user_id),
            'content': body['content'], 'created_at': '2026-01-01T12:00:00+00:00',
        }))
        raise httpx.ReadTimeout('slow', request=request)

    client = ChatClient('http://test', token_for(user_id), transport=httpx.MockTransport(handler))
    with pytest.raises(TransientStorageError):
        await client.send_optimistic(conv, 'made it', messages=messages)
    assert len(messages) == 1
    assert messages.pending_ids == []
    await client.aclose()


@pytest.mark.asyncio
async def test_retry_reuses_message_id(clients):
    alice = await clients('alice')
    bob = await clients('bob')
    conv = await alice.open_private_conversation(bob.user_id)
    messages = MessageList(conv)
    message_id = uuid.uuid4()

    first = await alice.send_optimistic(conv, 'once', messages=messages, message_id=message_id)
    again = await alice.send_optimistic(conv, 'once', messages=messages, message_id=message_id)

    assert first['id'] == again['id'] == str(message_id)
    assert messages.ids == [str(message_id)]
    assert [m['id'] for m in await bob.list_messages(conv)] == [str(message_id)]


def test_rate_limit_responses_are_not_cooldowns():
    limited = httpx.Response(429, json={'detail': 'slow down', 'error': 'rate_limited'}, headers={'Retry-After': '3600'})
    err = error_from_response(limited)
    assert isinstance(err, RateLimited)
    assert not isinstance(err, CooldownActive)
    assert err.retry_after == 3600
    assert isinstance(error_from_response(httpx.Response(429, json={'detail': 'slow down'})), RateLimited)
