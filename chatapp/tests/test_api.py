import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chatapp.main import app
from chatapp.media import TOMBSTONE


@pytest_asyncio.fixture
async def api(db):
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as ac:
        yield ac


async def provision(api, headers, username):
    user_id = uuid.uuid4()
    res = await api.post('/api/profiles/me', json={'username': username, 'full_name': username.title()},
                         headers=headers(user_id))
    assert res.status_code == 200, res.text
    return user_id


@pytest.mark.asyncio
async def test_healthz(api):
    res = await api.get('/healthz')
    assert res.status_code == 200
    assert res.json() == {'status': 'ok'}


@pytest.mark.asyncio
async def test_requests_need_a_valid_token(api):
    res = await api.get('/api/profiles/me')
    assert res.status_code == 401
    assert res.json()['error'] == 'unauthenticated'
    res = await api.get('/api/profiles/me', headers={'Authorization': 'Bearer nope'})
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_conversation_flow(api, headers):
    alice = await provision(api, headers, 'alice')
    bob = await provision(api, headers, 'bob')

    opened = await api.post('/api/conversations/private', json={'user_id': str(bob)}, headers=headers(alice))
    assert opened.status_code == 200, opened.text
    conv = opened.json()['conversation_id']
    reopened = await api.post('/api/conversations/private', json={'user_id': str(alice)}, headers=headers(bob))
    assert reopened.json()['conversation_id'] == conv

    sent = await api.post(f'/api/messages/{conv}', json={'content': 'hello bob'}, headers=headers(alice))
    assert sent.status_code == 200, sent.text
    message = sent.json()

    reply = await api.post(f'/api/messages/{conv}', json={'content': 'hey', 'reply_to_id': message['id']},
                           headers=headers(bob))
    assert reply.json()['reply_to']['content'] == 'hello bob'

    reacted = await api.put(f"/api/messages/{message['id']}/reactions", json={'emoji': '🔥'}, headers=headers(bob))
    assert reacted.json() == {'present': True, 'changed': True}
    reactions = await api.get(f'/api/conversations/{conv}/reactions', headers=headers(alice))
    assert [r['emoji'] for r in reactions.json()] == ['🔥']

    read = await api.post(f'/api/conversations/{conv}/read', headers=headers(bob))
    assert [m['id'] for m in read.json()] == [message['id']]

    deleted = await api.delete(f"/api/messages/{message['id']}", headers=headers(alice))
    assert deleted.json()['content'] == TOMBSTONE

    listed = await api.get(f'/api/conversations/{conv}/messages', headers=headers(bob))
    rows = listed.json()
    assert [r['content'] for r in rows] == [TOMBSTONE, 'hey']
    assert rows[1]['reply_to']['content'] == TOMBSTONE

    summaries = await api.get('/api/conversations/', headers=headers(alice))
    assert summaries.json()[0]['id'] == conv


@pytest.mark.asyncio
async def test_error_responses(api, headers):
    alice = await provision(api, headers, 'alice')
    bob = await provision(api, headers, 'bob')

    res = await api.post('/api/conversations/private', json={'user_id': str(alice)}, headers=headers(alice))
    assert res.status_code == 400
    assert res.json()['error'] == 'validation_error'

    res = await api.post('/api/conversations/private', json={'user_id': str(uuid.uuid4())}, headers=headers(alice))
    assert res.status_code == 404

    res = await api.get(f'/api/conversations/{uuid.uuid4()}/messages', headers=headers(bob))
    assert res.status_code == 404
    assert res.json()['error'] == 'not_found'


@pytest.mark.asyncio
async def test_name_cooldown_maps_to_429(api, headers):
    alice = await provision(api, headers, 'alice')

    first = await api.put('/api/profiles/me/name', json={'full_name': 'Alice One'}, headers=headers(alice))
    assert first.status_code == 200
    second = await api.put('/api/profiles/me/name', json={'full_name': 'Alice Two'}, headers=headers(alice))
    assert second.status_code == 429
    assert second.json()['error'] == 'cooldown_active'
    assert int(second.headers['Retry-After']) > 0


@pytest.mark.asyncio
async def test_search_and_profile_lookup(api, headers):
    alice = await provision(api, headers, 'alice')
    bob = await provision(api, headers, 'bobby')

    res = await api.get('/api/profiles/search', params={'q': 'BOB'}, headers=headers(alice))
    assert [p['id'] for p in res.json()] == [str(bob)]
    res = await api.get(f'/api/profiles/{bob}', headers=headers(alice))
    assert res.json()['username'] == 'bobby'


@pytest.mark.asyncio
async def test_attachments_upload(api, headers, fake_storage):
    alice = await provision(api, headers, 'alice')
    world = '00000000-0000-0000-0000-000000000001'

    res = await api.post(
        f'/api/messages/{world}/attachments',
        files=[('files', ('a.jpg', b'jpeg-a', 'image/jpeg')),
               ('files', ('b.jpg', b'jpeg-b', 'image/jpeg')),
               ('files', ('empty.pdf', b'', 'application/pdf'))],
        data={'caption': 'pics'},
        headers=headers(alice),
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert [(m['media_type'], m['content']) for m in body['messages']] == [('gallery', 'pics')]
    assert [f['filename'] for f in body['failures']] == ['empty.pdf']


@pytest.mark.asyncio
async def test_stories_endpoints(api, headers, fake_storage):
    alice = await provision(api, headers, 'alice')
    bob = await provision(api, headers, 'bob')

    created = await api.post('/api/stories/', files={'file': ('clip.mp4', b'video', 'video/mp4')},
                             data={'caption': 'hi'}, headers=headers(alice))
    assert created.status_code == 200, created.text
    story = created.json()

    feed = await api.get('/api/stories/', headers=headers(bob))
    assert [g['user_id'] for g in feed.json()] == [str(alice)]
    assert feed.json()[0]['has_unviewed'] is True

    viewed = await api.post(f"/api/stories/{story['id']}/view", headers=headers(bob))
    assert viewed.json()['ok'] is True
    viewers = await api.get(f"/api/stories/{story['id']}/viewers", headers=headers(alice))
    assert [v['viewer_id'] for v in viewers.json()] == [str(bob)]
    forbidden = await api.get(f"/api/stories/{story['id']}/viewers", headers=headers(bob))
    assert forbidden.status_code == 404

    deleted = await api.delete(f"/api/stories/{story['id']}", headers=headers(alice))
    assert deleted.status_code == 200


@pytest.mark.asyncio
async def test_send_rate_limit_has_its_own_error_kind(api, headers, monkeypatch):
    alice = await provision(api, headers, 'alice')
    world = '00000000-0000-0000-0000-000000000001'

    async def exhausted(user_id, action, limit, window):
        return False

    monkeypatch.setattr('chatapp.routes.messages.check_rate_limit', exhausted)
    res = await api.post(f'/api/messages/{world}', json={'content': 'spam'}, headers=headers(alice))
    assert res.status_code == 429
    assert res.json()['error'] == 'rate_limited'
    assert res.headers['Retry-After'] == '3600'
