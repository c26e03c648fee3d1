"""
Private conversation resolver.

Finds or creates the single non-group conversation between two profiles. The
lookup and the insert run under one lock keyed by the unordered user pair, so
resolve(A, B) and resolve(B, A) serialize and only one of them can create.
"""
import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Dict

from . import crud
from .errors import NotFound, TransientStorageError, Unauthenticated, ValidationError, translate_store_errors
from .feed import Operation, feed
from .metrics import CONVERSATIONS_CREATED
from .models import AsyncSessionLocal
from .schemas.conversations import ConversationOut, ParticipantOut

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = float(os.getenv('LOCK_TIMEOUT_SECONDS', '5'))


def pair_key(user_a: uuid.UUID, user_b: uuid.UUID) -> str:
    lo, hi = sorted([str(user_a), str(user_b)])
    return f"{lo}:{hi}"


class PairLocks:
    """In-process mutex map keyed by the sorted pair"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str, timeout: float):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout)
            except asyncio.TimeoutError as e:
                raise TransientStorageError('Timed out waiting for conversation lock') from e
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


pair_locks = PairLocks()


@translate_store_errors
async def get_or_create_private_conversation(self_id: uuid.UUID, other_id: uuid.UUID) -> uuid.UUID:
    if self_id is None:
        raise Unauthenticated('Sign in to start a conversation')
    if self_id == other_id:
        raise ValidationError('Cannot start a conversation with yourself')

    key = pair_key(self_id, other_id)
    async with pair_locks.hold(key, LOCK_TIMEOUT_SECONDS):
        async with AsyncSessionLocal() as session:
            async with session.begin():
                await crud.acquire_pair_lock(session, key, LOCK_TIMEOUT_SECONDS)
                if not await crud.profile_exists(session, self_id):
                    raise NotFound('Your profile does not exist')
                if not await crud.profile_exists(session, other_id):
                    raise NotFound('User not found')

                existing = await crud.find_private_conversation(session, self_id, other_id)
                if existing is not None:
                    logger.debug(f"Resolved existing conversation {existing} for {key}")
                    return existing

                conversation = await crud.create_conversation(session, is_group=False)
                participants = [
                    await crud.add_participant(session, conversation.id, self_id),
                    await crud.add_participant(session, conversation.id, other_id),
                ]

    CONVERSATIONS_CREATED.inc()
    logger.info(f"Created private conversation {conversation.id} for {key}")
    await feed.emit('conversations', Operation.INSERT,
                    ConversationOut.model_validate(conversation).model_dump(mode='json'))
    for p in participants:
        await feed.emit('conversation_participants', Operation.INSERT,
                        ParticipantOut.model_validate(p).model_dump(mode='json'))
    return conversation.id
