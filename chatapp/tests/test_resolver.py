import asyncio
import uuid

import pytest
from sqlalchemy import func, select

from chatapp.errors import NotFound, TransientStorageError, Unauthenticated, ValidationError
from chatapp.models import AsyncSessionLocal, Conversation, ConversationParticipant, WORLD_CONVERSATION_ID
from chatapp.resolver import PairLocks, get_or_create_private_conversation, pair_key, pair_locks


async def private_conversation_count():
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(func.count(Conversation.id)).where(Conversation.id != WORLD_CONVERSATION_ID))
        return q.scalar()


def test_pair_key_is_order_independent():
    a, b = uuid.uuid4(), uuid.uuid4()
    assert pair_key(a, b) == pair_key(b, a)
    lo, hi = pair_key(a, b).split(':')
    assert lo <= hi


@pytest.mark.asyncio
async def test_concurrent_resolves_converge_on_one_conversation(make_user):
    alice = await make_user('alice')
    bob = await make_user('bob')

    results = await asyncio.gather(
        get_or_create_private_conversation(alice, bob),
        get_or_create_private_conversation(bob, alice),
        get_or_create_private_conversation(alice, bob),
        get_or_create_private_conversation(bob, alice),
    )

    assert len(set(results)) == 1
    assert await private_conversation_count() == 1
    assert len(pair_locks) == 0

    async with AsyncSessionLocal() as session:
        q = await session.execute(select(ConversationParticipant.user_id).where(
            ConversationParticipant.conversation_id == results[0]))
        assert set(q.scalars().all()) == {alice, bob}


@pytest.mark.asyncio
async def test_resolve_returns_existing_conversation(make_user, events):
    alice = await make_user('alice')
    bob = await make_user('bob')

    first = await get_or_create_private_conversation(alice, bob)
    second = await get_or_create_private_conversation(bob, alice)

    assert first == second
    inserts = [e for e in events if e.table == 'conversations']
    assert len(inserts) == 1
    assert inserts[0].row['id'] == str(first)
    assert len([e for e in events if e.table == 'conversation_participants']) == 2


@pytest.mark.asyncio
async def test_different_pairs_get_different_conversations(make_user):
    alice = await make_user('alice')
    bob = await make_user('bob')
    carol = await make_user('carol')

    ab = await get_or_create_private_conversation(alice, bob)
    ac = await get_or_create_private_conversation(alice, carol)

    assert ab != ac
    assert await private_conversation_count() == 2


@pytest.mark.asyncio
async def test_resolve_rejects_bad_input(make_user):
    alice = await make_user('alice')

    with pytest.raises(Unauthenticated):
        await get_or_create_private_conversation(None, alice)
    with pytest.raises(ValidationError):
        await get_or_create_private_conversation(alice, alice)
    with pytest.raises(NotFound):
        await get_or_create_private_conversation(alice, uuid.uuid4())
    assert await private_conversation_count() == 0


@pytest.mark.asyncio
async def test_pair_lock_times_out_as_transient_error():
    locks = PairLocks()
    entered = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with locks.hold('a:b', 1):
            entered.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await entered.wait()
    with pytest.raises(TransientStorageError):
        async with locks.hold('a:b', 0.05):
            pass
    release.set()
    await task
    assert len(locks) == 0
