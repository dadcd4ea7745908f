"""Create product_assets, room_sessions, render_jobs and quota_counters

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17

- product_assets: per (tenant, product) cutout and go-live state
- room_sessions: shopper room photos (storage keys only)
- render_jobs: composite render queue with admission holds
- quota_counters: per (tenant, UTC day, category) usage and holds
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'product_assets',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('tenant_id', sa.String(), nullable=False, index=True),
        sa.Column('product_id', sa.String(), nullable=False),
        sa.Column('product_title', sa.String(), nullable=True),
        sa.Column('source_image_ref', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='unprepared', index=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('cutout_storage_key', sa.String(), nullable=True),
        sa.Column('placement_metadata', sa.JSON(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('claim_token', sa.String(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP'), index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('prepared_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('tenant_id', 'product_id', name='uq_product_assets_tenant_product'),
    )

    op.create_table(
        'room_sessions',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('tenant_id', sa.String(), nullable=False, index=True),
        sa.Column('original_room_image_key', sa.String(), nullable=False),
        sa.Column('cleaned_room_image_key', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table(
        'render_jobs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('tenant_id', sa.String(), nullable=False, index=True),
        sa.Column('room_session_id', sa.String(), sa.ForeignKey('room_sessions.id'), nullable=False, index=True),
        sa.Column('product_id', sa.String(), nullable=True),
        sa.Column('product_asset_id', sa.String(), sa.ForeignKey('product_assets.id'), nullable=True),
        sa.Column('product_image_ref', sa.String(), nullable=True),
        sa.Column('placement_x', sa.Float(), nullable=False),
        sa.Column('placement_y', sa.Float(), nullable=False),
        sa.Column('placement_scale', sa.Float(), nullable=False),
        sa.Column('style_preset', sa.String(), nullable=False, server_default='neutral'),
        sa.Column('quality', sa.String(), nullable=False, server_default='standard'),
        sa.Column('config', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='queued', index=True),
        sa.Column('output_storage_key', sa.String(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('quota_date', sa.Date(), nullable=False),
        sa.Column('quota_held', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP'), index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'quota_counters',
        sa.Column('tenant_id', sa.String(), primary_key=True),
        sa.Column('date', sa.Date(), primary_key=True),
        sa.Column('category', sa.String(), primary_key=True),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('daily_limit', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )


def downgrade() -> None:
    op.drop_table('quota_counters')
    op.drop_table('render_jobs')
    op.drop_table('room_sessions')
    op.drop_table('product_assets')
