"""Create local store tables

Revision ID: 3f1a6c2e9b40
Revises:
Create Date: 2026-10-19

Creates the cached events table, per-calendar sync cursors and the
OAuth token table for REST accounts.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1a6c2e9b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

json_type = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    op.create_table('events',
        sa.Column('id', sa.String(length=2048), nullable=False),
        sa.Column('account_id', sa.String(length=255), nullable=True),
        sa.Column('calendar_id', sa.String(length=1024), nullable=True),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('start', json_type, nullable=False),
        sa.Column('end', json_type, nullable=False),
        sa.Column('start_utc', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_utc', sa.DateTime(timezone=True), nullable=False),
        sa.Column('all_day', sa.Boolean(), nullable=False),
        sa.Column('recurrence', json_type, nullable=False),
        sa.Column('recurring_event_id', sa.String(length=1024), nullable=True),
        sa.Column('attendees', json_type, nullable=False),
        sa.Column('organizer', json_type, nullable=True),
        sa.Column('conference_link', sa.Text(), nullable=True),
        sa.Column('remote_created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('remote_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('event_metadata', json_type, nullable=False),
        sa.Column('synced_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('events', schema=None) as batch_op:
        batch_op.create_index('ix_events_account_id', ['account_id'], unique=False)
        batch_op.create_index('ix_events_account_calendar', ['account_id', 'calendar_id'], unique=False)
        batch_op.create_index('ix_events_time_range', ['start_utc', 'end_utc'], unique=False)

    op.create_table('sync_cursors',
        sa.Column('account_id', sa.String(length=255), nullable=False),
        sa.Column('calendar_id', sa.String(length=1024), nullable=False),
        sa.Column('token', sa.Text(), nullable=True),
        sa.Column('last_full_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('id', sa.CHAR(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'calendar_id', name='uq_sync_cursors_account_calendar')
    )
    with op.batch_alter_table('sync_cursors', schema=None) as batch_op:
        batch_op.create_index('ix_sync_cursors_account_id', ['account_id'], unique=False)

    op.create_table('account_tokens',
        sa.Column('account_id', sa.String(length=255), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False, server_default='google'),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expiry', sa.DateTime(timezone=True), nullable=True),
        sa.Column('id', sa.CHAR(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id')
    )


def downgrade() -> None:
    op.drop_table('account_tokens')
    with op.batch_alter_table('sync_cursors', schema=None) as batch_op:
        batch_op.drop_index('ix_sync_cursors_account_id')
    op.drop_table('sync_cursors')
    with op.batch_alter_table('events', schema=None) as batch_op:
        batch_op.drop_index('ix_events_time_range')
        batch_op.drop_index('ix_events_account_calendar')
        batch_op.drop_index('ix_events_account_id')
    op.drop_table('events')
