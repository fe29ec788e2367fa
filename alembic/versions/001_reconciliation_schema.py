"""Reconciliation schema - listings, reconciliation jobs and activity log

Revision ID: 001_reconciliation_schema
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_reconciliation_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'listings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('marketplace_pid', sa.String(length=64), nullable=False),
        sa.Column('storefront_id', sa.String(length=128), nullable=True),
        sa.Column('storefront_inventory_item_id', sa.String(length=128), nullable=True),
        sa.Column('title', sa.Text(), nullable=False, server_default=''),
        sa.Column('original_price_minor', sa.BigInteger(), nullable=True),
        sa.Column('availability', sa.String(length=32), nullable=False, server_default='ACTIVE'),
        sa.Column('sold_from', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('pending_remote_order', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('remote_order_ids', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('storefront_order_id', sa.String(length=128), nullable=True),
        sa.Column('cancelled_storefront_order_ids', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('storefront_synced', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('needs_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('review_reason', sa.Text(), nullable=True),
        sa.Column('sync_attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error_code', sa.String(length=128), nullable=True),
        sa.Column('sold_at', sa.DateTime(), nullable=True),
        sa.Column('last_reconciled_at', sa.DateTime(), nullable=True),
        sa.Column('last_seen_selling_at', sa.DateTime(), nullable=True),
        sa.Column('not_found_since', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_listings_marketplace_pid', 'listings', ['marketplace_pid'], unique=True)
    op.create_index('ix_listings_storefront_id', 'listings', ['storefront_id'])
    op.create_index('ix_listings_availability', 'listings', ['availability'])
    op.create_index('ix_listings_pending_remote_order', 'listings', ['pending_remote_order'])

    op.create_table(
        'reconciliation_jobs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('listing_key', sa.String(length=64), nullable=False),
        sa.Column('event_kind', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='queued'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_reconciliation_jobs_listing_key', 'reconciliation_jobs', ['listing_key'])
    op.create_index('ix_reconciliation_jobs_status', 'reconciliation_jobs', ['status'])

    op.create_table(
        'activity_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('entity_id', sa.String(length=100), nullable=False),
        sa.Column('platform', sa.String(length=50), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_activity_log_action', 'activity_log', ['action'])
    op.create_index('ix_activity_log_entity_type', 'activity_log', ['entity_type'])
    op.create_index('ix_activity_log_entity_id', 'activity_log', ['entity_id'])
    op.create_index('ix_activity_log_platform', 'activity_log', ['platform'])
    op.create_index('ix_activity_log_created_at', 'activity_log', ['created_at'])


def downgrade() -> None:
    op.drop_table('activity_log')
    op.drop_table('reconciliation_jobs')
    op.drop_table('listings')
