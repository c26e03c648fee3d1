"""
Client-side realtime views.

Each view holds rows as received over the wire (JSON dicts) and applies change
events with the same merge rules: an insert is ignored when the id is already
present (unless it confirms a pending optimistic row), an update replaces in
place, a delete removes by exact id, and an update or delete for an id the
view never saw is dropped. The feed is best-effort, so every view can also be
rebuilt from a full re-fetch.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from .feed import ChangeEvent, Operation
from .media import TOMBSTONE

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

PRESENCE_TTL_SECONDS = int(os.getenv('PRESENCE_TTL_SECONDS', '90'))


def parse_time(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _key(value) -> Optional[str]:
    return None if value is None else str(value)


class KeyedList:
    """Ordered rows with unique ids"""

    def __init__(self, rows: Iterable[Row] = ()):
        self._rows: List[Row] = []
        self.reconcile(rows)

    def __len__(self):
        return len(self._rows)

    def __iter__(self):
        return iter(list(self._rows))

    def __contains__(self, row_id) -> bool:
        return self._position(row_id) is not None

    @property
    def rows(self) -> List[Row]:
        return list(self._rows)

    @property
    def ids(self) -> List[str]:
        return [_key(r['id']) for r in self._rows]

    def get(self, row_id) -> Optional[Row]:
        pos = self._position(row_id)
        return None if pos is None else self._rows[pos]

    def _position(self, row_id) -> Optional[int]:
        row_id = _key(row_id)
        for pos, row in enumerate(self._rows):
            if _key(row['id']) == row_id:
                return pos
        return None

    def insert(self, row: Row) -> bool:
        if row['id'] in self:
            return False
        self._rows.append(dict(row))
        return True

    def update(self, row: Row) -> bool:
        pos = self._position(row['id'])
        if pos is None:
            logger.debug(f"Dropping update for unknown id {row['id']}")
            return False
        self._rows[pos] = self._merged(self._rows[pos], row)
        return True

    def delete(self, row: Union[Row, Any]) -> bool:
        row_id = row['id'] if isinstance(row, dict) else row
        pos = self._position(row_id)
        if pos is None:
            return False
        del self._rows[pos]
        return True

    def _merged(self, old: Row, new: Row) -> Row:
        return dict(new)

    def accepts(self, row: Row) -> bool:
        return True

    def apply(self, event: ChangeEvent) -> bool:
        if not self.accepts(event.row):
            return False
        if event.operation == Operation.INSERT:
            return self.insert(event.row)
        if event.operation == Operation.UPDATE:
            return self.update(event.row)
        return self.delete(event.row)

    def reconcile(self, rows: Iterable[Row]):
        """Replace the whole view with a fresh fetch"""
        self._rows = []
        for row in rows:
            self.insert(row)


class MessageList(KeyedList):
    """Messages of the open conversation, plus optimistic sends awaiting confirmation"""

    def __init__(self, conversation_id, rows: Iterable[Row] = ()):
        self.conversation_id = _key(conversation_id)
        super().__init__(rows)

    def accepts(self, row: Row) -> bool:
        return _key(row.get('conversation_id')) == self.conversation_id

    def insert(self, row: Row) -> bool:
        existing = self.get(row['id'])
        if existing is not None and existing.get('pending') and not row.get('pending'):
            # stored copy of an optimistic send, possibly echoed before the POST returned
            return self.confirm(row)
        return super().insert(row)

    def update(self, row: Row) -> bool:
        if not super().update(row):
            return False
        if row.get('deleted'):
            self._tombstone_replies(row)
        return True

    def _tombstone_replies(self, target: Row):
        target_id = _key(target['id'])
        for pos, row in enumerate(self._rows):
            if _key(row.get('reply_to_id')) == target_id and row.get('reply_to'):
                self._rows[pos] = {**row, 'reply_to': {**row['reply_to'], 'content': TOMBSTONE, 'deleted': True}}

    @property
    def pending_ids(self) -> List[str]:
        return [_key(r['id']) for r in self._rows if r.get('pending')]

    def add_pending(self, row: Row) -> bool:
        return self.insert({**row, 'pending': True})

    def confirm(self, server_row: Row) -> bool:
        """Swap the optimistic row for the stored copy; appends if the local row is gone"""
        row = {k: v for k, v in server_row.items() if k != 'pending'}
        pos = self._position(row['id'])
        if pos is None:
            return self.insert(row)
        self._rows[pos] = row
        return True

    def rollback(self, row_id) -> bool:
        row = self.get(row_id)
        if row is None or not row.get('pending'):
            return False
        return self.delete(row_id)


class ReactionIndex:
    """Reactions of the open conversation grouped by message"""

    def __init__(self, conversation_id=None, rows: Iterable[Row] = ()):
        self.conversation_id = _key(conversation_id)
        self._by_id: Dict[str, Row] = {}
        self.reconcile(rows)

    def __len__(self):
        return len(self._by_id)

    def accepts(self, row: Row) -> bool:
        return self.conversation_id is None or _key(row.get('conversation_id')) == self.conversation_id

    def apply(self, event: ChangeEvent) -> bool:
        if not self.accepts(event.row):
            return False
        row_id = _key(event.row['id'])
        if event.operation == Operation.INSERT:
            if row_id in self._by_id:
                return False
            self._by_id[row_id] = dict(event.row)
            return True
        if row_id not in self._by_id:
            return False
        if event.operation == Operation.UPDATE:
            self._by_id[row_id] = dict(event.row)
        else:
            del self._by_id[row_id]
        return True

    def for_message(self, message_id) -> List[Row]:
        message_id = _key(message_id)
        return [r for r in self._by_id.values() if _key(r['message_id']) == message_id]

    def counts(self, message_id) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for r in self.for_message(message_id):
            counts[r['emoji']] = counts.get(r['emoji'], 0) + 1
        return counts

    def has_reacted(self, message_id, user_id, emoji: str) -> bool:
        user_id = _key(user_id)
        return any(_key(r['user_id']) == user_id and r['emoji'] == emoji for r in self.for_message(message_id))

    def reconcile(self, rows: Iterable[Row]):
        self._by_id = {_key(r['id']): dict(r) for r in rows}


class ConversationList(KeyedList):
    """Conversation summaries; realtime updates carry only the conversation columns"""

    def __init__(self, user_id, rows: Iterable[Row] = ()):
        self.user_id = _key(user_id)
        super().__init__(rows)

    def _merged(self, old: Row, new: Row) -> Row:
        return {**old, **new}

    def note_message(self, message: Row, open_conversation_id=None) -> bool:
        """
        Refresh last message and unread count from a message event.

        Only messages newer than the summary's last message count: anything at
        or before it was already included by the fetch or event that set it.
        """
        pos = self._position(message.get('conversation_id'))
        if pos is None:
            return False
        summary = dict(self._rows[pos])
        last = summary.get('last_message')
        if last is not None and (_key(last.get('id')) == _key(message['id']) or
                                 parse_time(message['created_at']) <= parse_time(last['created_at'])):
            return False
        summary['last_message'] = dict(message)
        summary['updated_at'] = max(
            [t for t in (summary.get('updated_at'), message['created_at']) if t], key=parse_time)
        from_other = _key(message.get('sender_id')) != self.user_id
        is_open = _key(open_conversation_id) == _key(message['conversation_id'])
        if from_other and not is_open and not message.get('is_read') and not message.get('deleted'):
            summary['unread_count'] = summary.get('unread_count', 0) + 1
        self._rows[pos] = summary
        return True

    def mark_read(self, conversation_id) -> bool:
        pos = self._position(conversation_id)
        if pos is None:
            return False
        self._rows[pos] = {**self._rows[pos], 'unread_count': 0}
        return True

    def ordered(self) -> List[Row]:
        """Most recent activity first"""
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(self._rows, key=lambda r: parse_time(r.get('updated_at')) or epoch, reverse=True)


class StoryIndex(KeyedList):
    """Story rows; expiry is applied on every read"""

    def active(self, now: datetime = None) -> List[Row]:
        now = now or datetime.now(timezone.utc)
        return [r for r in self._rows if now < parse_time(r['expires_at'])]

    def by_author(self, now: datetime = None) -> Dict[str, List[Row]]:
        groups: Dict[str, List[Row]] = {}
        for r in sorted(self.active(now), key=lambda r: parse_time(r['created_at'])):
            groups.setdefault(_key(r['user_id']), []).append(r)
        return groups


class PresenceView(KeyedList):
    """Profiles the client displays, with the TTL presence rule"""

    def is_online(self, user_id, now: datetime = None) -> bool:
        row = self.get(user_id)
        if row is None or not row.get('online'):
            return False
        last_seen = parse_time(row.get('last_seen'))
        if last_seen is None:
            return False
        now = now or datetime.now(timezone.utc)
        return (now - last_seen).total_seconds() < PRESENCE_TTL_SECONDS

    def track(self, rows: Iterable[Row]):
        for row in rows:
            if not self.insert(row):
                self.update(row)


class SyncCoordinator:
    """Routes change events to the derived views of one signed-in user"""

    def __init__(self, user_id):
        self.user_id = _key(user_id)
        self.messages: Optional[MessageList] = None
        self.reactions = ReactionIndex()
        self.conversations = ConversationList(user_id)
        self.stories = StoryIndex()
        self.presence = PresenceView()
        # views a dropped or unrenderable event left out of date
        self.stale = set()

    @property
    def open_conversation_id(self) -> Optional[str]:
        return self.messages.conversation_id if self.messages else None

    def open_conversation(self, conversation_id, messages: Iterable[Row] = (), reactions: Iterable[Row] = ()):
        self.messages = MessageList(conversation_id, messages)
        self.reactions = ReactionIndex(conversation_id, reactions)
        self.conversations.mark_read(conversation_id)

    def close_conversation(self):
        self.messages = None
        self.reactions = ReactionIndex()

    def topics(self) -> List[Dict[str, Any]]:
        """Subscriptions the current views need"""
        topics = [
            {'table': 'conversation_participants', 'filter': {'user_id': self.user_id}},
            {'table': 'stories', 'filter': None},
            {'table': 'profiles', 'filter': None},
        ]
        for row in self.conversations:
            topics.append({'table': 'conversations', 'filter': {'id': _key(row['id'])}})
            topics.append({'table': 'messages', 'filter': {'conversation_id': _key(row['id'])}})
        if self.open_conversation_id:
            topics.append({'table': 'message_reactions', 'filter': {'conversation_id': self.open_conversation_id}})
        return topics

    def handle(self, event: Union[ChangeEvent, Row]) -> bool:
        """Apply one event; False means it changed nothing"""
        if isinstance(event, dict):
            event = ChangeEvent.from_dict(event)
        table = event.table
        if table == 'messages':
            changed = False
            if self.messages is not None:
                changed = self.messages.apply(event)
            if event.operation == Operation.INSERT:
                changed = self.conversations.note_message(event.row, self.open_conversation_id) or changed
            return changed
        if table == 'message_reactions':
            return self.reactions.apply(event)
        if table == 'conversations':
            # summaries need participants, so a brand new conversation means a re-fetch
            if event.operation == Operation.INSERT and event.row['id'] not in self.conversations:
                self.stale.add('conversations')
                return False
            return self.conversations.apply(event)
        if table == 'conversation_participants':
            if _key(event.row.get('user_id')) == self.user_id and event.row.get('conversation_id') not in self.conversations:
                self.stale.add('conversations')
            return False
        if table == 'stories':
            return self.stories.apply(event)
        if table == 'profiles':
            return self.presence.apply(event)
        logger.debug(f"Ignoring event for table {table}")
        return False

    def reconcile(self, view: str, rows: Iterable[Row]):
        """Recovery path: replace a view with a full re-fetch"""
        if view == 'messages':
            if self.messages is None:
                raise ValueError('no conversation is open')
            pending = [r for r in self.messages if r.get('pending')]
            self.messages.reconcile(rows)
            # optimistic sends still in flight survive a re-fetch
            for row in pending:
                self.messages.insert(row)
        elif view == 'reactions':
            self.reactions.reconcile(rows)
        elif view == 'conversations':
            self.conversations.reconcile(rows)
        elif view == 'stories':
            self.stories.reconcile(rows)
        elif view == 'presence':
            self.presence.reconcile(rows)
        else:
            raise ValueError(f'unknown view: {view}')
        self.stale.discard(view)
