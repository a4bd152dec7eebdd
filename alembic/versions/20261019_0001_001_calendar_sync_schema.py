"""Calendar sync schema: connections and events.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One OAuth connection per user and provider
    op.create_table(
        'calendar_connections',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False, comment='Authenticated user ID'),
        sa.Column('provider', sa.String(length=16), nullable=False, comment='google | outlook'),
        sa.Column('provider_account_email', sa.String(), nullable=True, comment='Account email reported by the provider'),
        sa.Column('provider_calendar_id', sa.String(), nullable=False, server_default='primary', comment='Linked remote calendar'),
        sa.Column('access_token', sa.Text(), nullable=False, comment='Fernet-encrypted access token'),
        sa.Column('refresh_token', sa.Text(), nullable=True, comment='Fernet-encrypted refresh token'),
        sa.Column('token_type', sa.String(), nullable=True),
        sa.Column('scope', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True, comment='Access token expiry (UTC)'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'provider', name='uq_calendar_connections_user_provider'),
    )
    op.create_index('idx_calendar_connections_user', 'calendar_connections', ['user_id'])

    # Local events: user-authored (source=local) and imported copies
    op.create_table(
        'calendar_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False, comment='Owner user ID'),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location', sa.String(), nullable=True),
        sa.Column('starts_at', sa.DateTime(), nullable=False, comment='Start (UTC)'),
        sa.Column('ends_at', sa.DateTime(), nullable=False, comment='End (UTC)'),
        sa.Column('source', sa.String(length=16), nullable=False, server_default='local', comment='local | google | outlook'),
        sa.Column('source_event_id', sa.String(), nullable=True, comment='Remote id of an imported event'),
        sa.Column('provider_event_ids', sa.JSON(), nullable=False, comment='provider -> remote id of outward mirrors'),
        sa.Column('sync_state', sa.String(length=16), nullable=False, server_default='pending', comment='pending | synced | error'),
        sa.Column('sync_error', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'source', 'source_event_id', name='uq_calendar_events_user_source_event'),
    )
    op.create_index('idx_calendar_events_user_starts', 'calendar_events', ['user_id', 'starts_at'])


def downgrade() -> None:
    op.drop_index('idx_calendar_events_user_starts', table_name='calendar_events')
    op.drop_table('calendar_events')
    op.drop_index('idx_calendar_connections_user', table_name='calendar_connections')
    op.drop_table('calendar_connections')
