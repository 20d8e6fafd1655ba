"""Initial migration - create chats, messages, and checkpoints tables

Revision ID: 20240115_090000
Revises:
Create Date: 2024-01-15 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20240115_090000'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create chats table
    op.create_table(
        'chats',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(255), nullable=False, server_default='New chat'),
        sa.Column('model', sa.String(255), nullable=True),
        sa.Column('context', sa.Text(), nullable=True),
        sa.Column('is_pinned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_index('ix_chats_user_id', 'chats', ['user_id'])
    op.create_index('ix_chats_user_updated', 'chats', ['user_id', 'updated_at'])

    # Create messages table; ids are canonical (client ids are normalized to UUIDv5)
    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('chat_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('role', sa.String(50), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.String(64), nullable=False),
        sa.ForeignKeyConstraint(['chat_id'], ['chats.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("role IN ('user', 'assistant', 'system')", name='check_message_role')
    )

    op.create_index('ix_messages_chat_id', 'messages', ['chat_id'])
    op.create_index('ix_messages_user_id', 'messages', ['user_id'])
    op.create_index('ix_messages_chat_user_created', 'messages', ['chat_id', 'user_id', 'created_at'])

    # Create checkpoints table
    op.create_table(
        'checkpoints',
        sa.Column('id', sa.String(255), nullable=False),
        sa.Column('chat_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('message_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('timestamp', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['chat_id'], ['chats.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_index('ix_checkpoints_chat_id', 'checkpoints', ['chat_id'])
    op.create_index('ix_checkpoints_user_id', 'checkpoints', ['user_id'])
    op.create_index('ix_checkpoints_chat_user', 'checkpoints', ['chat_id', 'user_id', 'message_index'])


def downgrade() -> None:
    # Drop tables in reverse order due to foreign key constraints
    op.drop_table('checkpoints')
    op.drop_table('messages')
    op.drop_table('chats')
