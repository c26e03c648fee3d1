import asyncio
import logging
import uuid
from typing import Dict, Optional, Set
from fastapi import WebSocket
from pydantic import ValidationError as SchemaError
from . import crud, profiles
from .errors import ChatError, NotFound, ValidationError
from .feed import ChangeEvent, Subscription, Topic, feed
from .models import AsyncSessionLocal
from .schemas.realtime import SubscriptionIn

logger = logging.getLogger(__name__)

OUTBOX_SIZE = 1000

# tables scoped to one conversation, and the column that names it
CONVERSATION_SCOPED = {
    'messages': 'conversation_id',
    'message_reactions': 'conversation_id',
    'conversations': 'id',
}
OPEN_TABLES = {'stories', 'profiles'}


class RealtimeSession:
    """One websocket: its topics plus an outbox drained by a single writer task"""

    def __init__(self, user_id: uuid.UUID, websocket: WebSocket):
        self.user_id = user_id
        self.websocket = websocket
        self.subscriptions: Dict[Topic, Subscription] = {}
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=OUTBOX_SIZE)
        self.writer_task: Optional[asyncio.Task] = None

    def push(self, message: dict):
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            # delivery is best-effort; clients reconcile by re-fetching
            logger.warning(f"Outbox full for {self.user_id}, dropping {message.get('type')}")

    async def on_event(self, event: ChangeEvent):
        self.push({'type': 'event', **event.to_dict()})

    async def run_writer(self):
        while True:
            message = await self.outbox.get()
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logger.info(f"Websocket send to {self.user_id} failed: {e}")
                return


async def authorize(user_id: uuid.UUID, topic: Topic):
    if topic.table in OPEN_TABLES:
        return
    if topic.table == 'conversation_participants':
        if topic.column != 'user_id' or topic.value != str(user_id):
            raise ValidationError('conversation_participants requires filter user_id=<your id>')
        return
    column = CONVERSATION_SCOPED.get(topic.table)
    if column is None:
        raise ValidationError(f'Unknown table: {topic.table}')
    if topic.column != column:
        raise ValidationError(f'{topic.table} requires filter {column}=<conversation id>')
    try:
        conversation_id = uuid.UUID(topic.value)
    except ValueError:
        raise ValidationError('Invalid conversation id')
    async with AsyncSessionLocal() as session:
        if not await crud.can_access_conversation(session, conversation_id, user_id):
            raise NotFound('Conversation not found')


class ConnectionManager:
    def __init__(self):
        self.connections: Dict[uuid.UUID, Set[RealtimeSession]] = {}

    async def connect(self, user_id: uuid.UUID, websocket: WebSocket) -> RealtimeSession:
        await websocket.accept()
        session = RealtimeSession(user_id, websocket)
        session.writer_task = asyncio.create_task(session.run_writer())
        self.connections.setdefault(user_id, set()).add(session)
        await self._presence(profiles.heartbeat, user_id)
        logger.info(f"Realtime connected: {user_id}")
        return session

    async def disconnect(self, session: RealtimeSession):
        for sub in list(session.subscriptions.values()):
            await feed.unsubscribe(sub)
        session.subscriptions.clear()
        if session.writer_task:
            session.writer_task.cancel()
        sessions = self.connections.get(session.user_id, set())
        sessions.discard(session)
        if not sessions:
            self.connections.pop(session.user_id, None)
            await self._presence(profiles.go_offline, session.user_id)
        logger.info(f"Realtime disconnected: {session.user_id}")

    async def _presence(self, update, user_id: uuid.UUID):
        try:
            await update(user_id)
        except ChatError as e:
            logger.warning(f"Presence update for {user_id} failed: {e.message}")

    async def handle(self, session: RealtimeSession, data: dict):
        if isinstance(data, dict) and data.get('action') == 'ping':
            await self._presence(profiles.heartbeat, session.user_id)
            session.push({'type': 'pong'})
            return
        try:
            request = SubscriptionIn.model_validate(data)
            topic = Topic.for_table(request.table, request.filter)
        except (SchemaError, ValueError) as e:
            session.push({'type': 'error', 'error': 'validation_error', 'detail': str(e)})
            return

        reply = {'table': topic.table, 'filter': request.filter}
        if request.action == 'subscribe':
            try:
                await authorize(session.user_id, topic)
            except ChatError as e:
                session.push({'type': 'error', 'error': e.kind, 'detail': e.message, **reply})
                return
            if topic not in session.subscriptions:
                session.subscriptions[topic] = await feed.subscribe(topic, session.on_event)
            session.push({'type': 'subscribed', **reply})
        elif request.action == 'unsubscribe':
            sub = session.subscriptions.pop(topic, None)
            if sub is not None:
                await feed.unsubscribe(sub)
            session.push({'type': 'unsubscribed', **reply})
        else:
            session.push({'type': 'error', 'error': 'validation_error',
                          'detail': f'Unknown action: {request.action}', **reply})

    def online_users(self):
        return list(self.connections.keys())


manager = ConnectionManager()
