from datetime import datetime, timedelta, timezone

from chatapp.feed import ChangeEvent, Operation
from chatapp.media import TOMBSTONE
from chatapp.sync import (
    ConversationList,
    MessageList,
    PresenceView,
    ReactionIndex,
    StoryIndex,
    SyncCoordinator,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def msg(id, conversation='c1', sender='bob', content='hi', minutes=0, **extra):
    row = {
        'id': id,
        'conversation_id': conversation,
        'sender_id': sender,
        'content': content,
        'is_read': False,
        'deleted': False,
        'created_at': (T0 + timedelta(minutes=minutes)).isoformat(),
        'reply_to_id': None,
        'reply_to': None,
    }
    row.update(extra)
    return row


def ev(table, operation, row):
    return ChangeEvent(table, operation, row)


def test_insert_is_deduplicated_by_id():
    messages = MessageList('c1', [msg('m1')])
    assert messages.apply(ev('messages', Operation.INSERT, msg('m1', content='dup'))) is False
    assert messages.apply(ev('messages', Operation.INSERT, msg('m2'))) is True
    assert messages.ids == ['m1', 'm2']
    assert messages.get('m1')['content'] == 'hi'


def test_update_replaces_in_place():
    messages = MessageList('c1', [msg('m1'), msg('m2'), msg('m3')])
    assert messages.apply(ev('messages', Operation.UPDATE, msg('m2', is_read=True))) is True
    assert messages.ids == ['m1', 'm2', 'm3']
    assert messages.get('m2')['is_read'] is True


def test_update_and_delete_for_unknown_id_are_dropped():
    messages = MessageList('c1', [msg('m1')])
    assert messages.apply(ev('messages', Operation.UPDATE, msg('ghost', content='x'))) is False
    assert messages.apply(ev('messages', Operation.DELETE, msg('ghost'))) is False
    assert messages.ids == ['m1']


def test_delete_removes_exact_id():
    messages = MessageList('c1', [msg('m1'), msg('m10')])
    assert messages.apply(ev('messages', Operation.DELETE, {'id': 'm1', 'conversation_id': 'c1'})) is True
    assert messages.ids == ['m10']


def test_events_for_other_conversations_are_ignored():
    messages = MessageList('c1')
    assert messages.apply(ev('messages', Operation.INSERT, msg('m1', conversation='c2'))) is False
    assert len(messages) == 0


def test_deleted_target_tombstones_reply_previews():
    target = msg('m1', content='secret')
    reply = msg('m2', reply_to_id='m1', reply_to={'id': 'm1', 'sender_id': 'bob', 'content': 'secret', 'deleted': False})
    messages = MessageList('c1', [target, reply])

    messages.apply(ev('messages', Operation.UPDATE, msg('m1', content=TOMBSTONE, deleted=True)))

    assert messages.get('m2')['reply_to_id'] == 'm1'
    assert messages.get('m2')['reply_to']['content'] == TOMBSTONE
    assert messages.get('m2')['reply_to']['deleted'] is True


def test_optimistic_send_confirm_and_rollback():
    messages = MessageList('c1')
    messages.add_pending(msg('local', sender='alice', content='draft'))
    assert messages.pending_ids == ['local']

    # feed echo of our own insert arrives before the HTTP response
    assert messages.apply(ev('messages', Operation.INSERT, msg('local', sender='alice', content='draft'))) is True
    assert messages.pending_ids == []
    assert messages.confirm(msg('local', sender='alice', content='draft', is_read=False)) is True
    assert messages.pending_ids == []
    assert len(messages) == 1

    messages.add_pending(msg('failed', sender='alice'))
    assert messages.rollback('failed') is True
    assert messages.ids == ['local']
    # confirmed rows are not rolled back
    assert messages.rollback('local') is False


def test_reaction_index():
    reactions = ReactionIndex('c1')
    like = {'id': 'r1', 'message_id': 'm1', 'user_id': 'bob', 'emoji': '👍', 'conversation_id': 'c1'}
    heart = {'id': 'r2', 'message_id': 'm1', 'user_id': 'carol', 'emoji': '❤️', 'conversation_id': 'c1'}

    assert reactions.apply(ev('message_reactions', Operation.INSERT, like)) is True
    assert reactions.apply(ev('message_reactions', Operation.INSERT, like)) is False
    assert reactions.apply(ev('message_reactions', Operation.INSERT, heart)) is True
    assert reactions.apply(ev('message_reactions', Operation.INSERT, {**heart, 'id': 'r3', 'conversation_id': 'c2'})) is False
    assert reactions.counts('m1') == {'👍': 1, '❤️': 1}
    assert reactions.has_reacted('m1', 'bob', '👍')

    assert reactions.apply(ev('message_reactions', Operation.DELETE, like)) is True
    assert reactions.apply(ev('message_reactions', Operation.DELETE, like)) is False
    assert reactions.counts('m1') == {'❤️': 1}


def test_conversation_list_merges_updates_and_tracks_unread():
    conversations = ConversationList('alice', [
        {'id': 'c1', 'theme': 'default', 'updated_at': T0.isoformat(), 'participants': [{'id': 'bob'}],
         'last_message': None, 'unread_count': 0},
        {'id': 'c2', 'theme': 'default', 'updated_at': (T0 + timedelta(minutes=5)).isoformat(), 'participants': [],
         'last_message': None, 'unread_count': 0},
    ])

    assert conversations.apply(ev('conversations', Operation.UPDATE, {'id': 'c1', 'theme': 'ocean', 'updated_at': T0.isoformat()}))
    assert conversations.get('c1')['participants'] == [{'id': 'bob'}]
    assert conversations.get('c1')['theme'] == 'ocean'

    assert conversations.note_message(msg('m1', conversation='c1', minutes=10)) is True
    assert conversations.get('c1')['unread_count'] == 1
    assert conversations.get('c1')['last_message']['id'] == 'm1'
    assert [r['id'] for r in conversations.ordered()] == ['c1', 'c2']

    conversations.note_message(msg('m2', conversation='c1', sender='alice', minutes=11))
    assert conversations.get('c1')['unread_count'] == 1
    assert conversations.mark_read('c1')
    assert conversations.get('c1')['unread_count'] == 0
    assert conversations.note_message(msg('m3', conversation='unknown')) is False


def test_story_index_filters_expired():
    stories = StoryIndex([
        {'id': 's1', 'user_id': 'bob', 'created_at': T0.isoformat(), 'expires_at': (T0 + timedelta(hours=24)).isoformat()},
        {'id': 's2', 'user_id': 'bob', 'created_at': (T0 + timedelta(hours=2)).isoformat(),
         'expires_at': (T0 + timedelta(hours=26)).isoformat()},
    ])
    assert [s['id'] for s in stories.active(T0 + timedelta(hours=1))] == ['s1', 's2']
    assert [s['id'] for s in stories.active(T0 + timedelta(hours=25))] == ['s2']
    assert list(stories.by_author(T0 + timedelta(hours=30))) == []


def test_presence_view_applies_ttl():
    presence = PresenceView([{'id': 'bob', 'online': True, 'last_seen': T0.isoformat()}])
    assert presence.is_online('bob', T0 + timedelta(seconds=60))
    assert not presence.is_online('bob', T0 + timedelta(seconds=120))
    assert not presence.is_online('stranger', T0)
    assert presence.apply(ev('profiles', Operation.UPDATE, {'id': 'stranger', 'online': True})) is False
    presence.apply(ev('profiles', Operation.UPDATE, {'id': 'bob', 'online': False, 'last_seen': T0.isoformat()}))
    assert not presence.is_online('bob', T0)


def test_coordinator_routes_events():
    sync = SyncCoordinator('alice')
    sync.reconcile('conversations', [{'id': 'c1', 'updated_at': T0.isoformat(), 'unread_count': 0, 'last_message': None}])
    sync.open_conversation('c1', [msg('m1')])

    assert sync.handle(ev('messages', Operation.INSERT, msg('m2', minutes=1)).to_dict()) is True
    assert sync.messages.ids == ['m1', 'm2']
    assert sync.conversations.get('c1')['last_message']['id'] == 'm2'
    # the open conversation does not accumulate unread messages
    assert sync.conversations.get('c1')['unread_count'] == 0

    assert sync.handle(ev('messages', Operation.UPDATE, msg('unknown'))) is False
    assert sync.handle(ev('conversation_participants', Operation.INSERT,
                          {'id': 'p1', 'conversation_id': 'c9', 'user_id': 'alice'})) is False
    assert 'conversations' in sync.stale

    topics = sync.topics()
    assert {'table': 'messages', 'filter': {'conversation_id': 'c1'}} in topics
    assert {'table': 'message_reactions', 'filter': {'conversation_id': 'c1'}} in topics


def test_reconcile_keeps_pending_sends():
    sync = SyncCoordinator('alice')
    sync.open_conversation('c1', [msg('m1')])
    sync.messages.add_pending(msg('local', sender='alice'))

    sync.reconcile('messages', [msg('m1'), msg('m2')])

    assert sync.messages.ids == ['m1', 'm2', 'local']
    assert sync.messages.pending_ids == ['local']


def test_echo_confirms_pending_row_so_rollback_keeps_it():
    messages = MessageList('c1')
    messages.add_pending(msg('local', sender='alice', content='draft'))

    assert messages.apply(ev('messages', Operation.INSERT, msg('local', sender='alice', content='draft'))) is True
    assert messages.get('local').get('pending') is None
    # the POST timing out afterwards must not remove a stored message
    assert messages.rollback('local') is False
    assert messages.ids == ['local']
    # a retry with the same id does not add a second copy
    assert messages.add_pending(msg('local', sender='alice', content='draft')) is False
    assert len(messages) == 1


def test_late_insert_after_refetch_does_not_count_twice():
    sync = SyncCoordinator('alice')
    sync.reconcile('conversations', [{'id': 'c1', 'updated_at': T0.isoformat(), 'unread_count': 1,
                                      'last_message': msg('m1', minutes=5)}])

    assert sync.handle(ev('messages', Operation.INSERT, msg('m1', minutes=5))) is False
    assert sync.conversations.get('c1')['unread_count'] == 1
    # an older message the fetch already covered is ignored too
    assert sync.handle(ev('messages', Operation.INSERT, msg('m0', minutes=1))) is False
    assert sync.conversations.get('c1')['unread_count'] == 1

    assert sync.handle(ev('messages', Operation.INSERT, msg('m2', minutes=6))) is True
    assert sync.conversations.get('c1')['unread_count'] == 2
    assert sync.conversations.get('c1')['last_message']['id'] == 'm2'
