"""create conversation tables

Revision ID: 3f9a1c7d2e4b
Revises:
Create Date: 2026-10-17 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f9a1c7d2e4b'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One conversation per customer and vehicle
    op.create_table('conversations',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.String(length=255), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('seller_id', sa.String(length=255), nullable=False),
        sa.Column('vehicle_id', sa.Integer(), nullable=False),
        sa.Column('vehicle_name', sa.String(length=255), nullable=False),
        sa.Column('vehicle_price', sa.Integer(), nullable=True),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_read_by_customer', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('is_read_by_seller', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_flagged', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('flag_reason', sa.Text(), nullable=True),
        sa.Column('flagged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_conversations_customer_vehicle', 'conversations', ['customer_id', 'vehicle_id'], unique=True)
    op.create_index('ix_conversations_seller_last', 'conversations', ['seller_id', 'last_message_at'], unique=False)
    op.create_index('ix_conversations_customer_last', 'conversations', ['customer_id', 'last_message_at'], unique=False)

    op.create_table('messages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('conversation_id', sa.String(length=64), nullable=False),
        sa.Column('message_id', sa.Integer(), nullable=False),
        sa.Column('client_ref', sa.String(length=64), nullable=False),
        sa.Column('sender', sa.String(length=20), nullable=False),
        sa.Column('type', sa.String(length=30), nullable=False, server_default='text'),
        sa.Column('body', sa.Text(), nullable=False, server_default=''),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_messages_conversation_message', 'messages', ['conversation_id', 'message_id'], unique=True)
    op.create_index('ix_messages_conversation_client_ref', 'messages', ['conversation_id', 'client_ref'], unique=True)

    op.create_table('notifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('recipient_id', sa.String(length=255), nullable=False),
        sa.Column('target_type', sa.String(length=20), nullable=False, server_default='conversation'),
        sa.Column('target_id', sa.String(length=64), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_notifications_recipient', 'notifications', ['recipient_id', 'is_read'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_notifications_recipient', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('ix_messages_conversation_client_ref', table_name='messages')
    op.drop_index('ix_messages_conversation_message', table_name='messages')
    op.drop_table('messages')
    op.drop_index('ix_conversations_customer_last', table_name='conversations')
    op.drop_index('ix_conversations_seller_last', table_name='conversations')
    op.drop_index('ix_conversations_customer_vehicle', table_name='conversations')
    op.drop_table('conversations')
