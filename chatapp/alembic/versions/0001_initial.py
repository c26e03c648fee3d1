"""initial

Revision ID: 0001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

revision = '0001'
down_revision = None
branch_labels = None
depends_on = None

WORLD_CONVERSATION_ID = '00000000-0000-0000-0000-000000000001'

def upgrade():
    op.create_table('profiles',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('username', sa.String(50), nullable=True),
        sa.Column('full_name', sa.String(100), nullable=True),
        sa.Column('avatar_url', sa.String(), nullable=True),
        sa.Column('is_online', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_name_change_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_profiles_username', 'profiles', ['username'], unique=True)

    op.create_table('conversations',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('is_group', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('name', sa.String(100), nullable=True),
        sa.Column('theme', sa.String(32), nullable=False, server_default='default'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_conversations_updated_at', 'conversations', ['updated_at'])

    op.create_table('conversation_participants',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('conversation_id', sa.Uuid, sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('conversation_id', 'user_id', name='uix_conversation_participant'),
    )
    op.create_index('ix_conversation_participants_conversation_id', 'conversation_participants', ['conversation_id'])
    op.create_index('ix_conversation_participants_user_id', 'conversation_participants', ['user_id'])

    op.create_table('messages',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('conversation_id', sa.Uuid, sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sender_id', sa.Uuid, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('media_url', sa.Text(), nullable=True),
        sa.Column('media_type', sa.String(16), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reply_to_id', sa.Uuid, sa.ForeignKey('messages.id', ondelete='SET NULL'), nullable=True),
    )
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])
    op.create_index('ix_messages_sender_id', 'messages', ['sender_id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])

    op.create_table('message_reactions',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('message_id', sa.Uuid, sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('emoji', sa.String(16), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('message_id', 'user_id', 'emoji', name='uix_message_user_emoji'),
    )
    op.create_index('ix_message_reactions_message_id', 'message_reactions', ['message_id'])

    op.create_table('stories',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('media_url', sa.String(), nullable=False),
        sa.Column('media_type', sa.String(16), nullable=False, server_default='image'),
        sa.Column('caption', sa.Text(), nullable=True),
        sa.Column('visibility', sa.String(16), nullable=False, server_default='world'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_stories_user_id', 'stories', ['user_id'])
    op.create_index('ix_stories_expires_at', 'stories', ['expires_at'])

    op.create_table('story_views',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('story_id', sa.Uuid, sa.ForeignKey('stories.id', ondelete='CASCADE'), nullable=False),
        sa.Column('viewer_id', sa.Uuid, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('viewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('story_id', 'viewer_id', name='uix_story_viewer'),
    )
    op.create_index('ix_story_views_story_id', 'story_views', ['story_id'])

    # world chat bootstrap
    op.execute(
        "INSERT INTO conversations (id, is_group, name, theme, created_at, updated_at) "
        f"VALUES ('{WORLD_CONVERSATION_ID}', true, 'World Chat', 'default', CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)"
    )

def downgrade():
    op.drop_table('story_views')
    op.drop_table('stories')
    op.drop_table('message_reactions')
    op.drop_table('messages')
    op.drop_table('conversation_participants')
    op.drop_table('conversations')
    op.drop_table('profiles')
