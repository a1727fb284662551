"""add_billing_and_usage_quota_tables

Revision ID: 3f9a1c7d2b84
Revises:
Create Date: 2026-10-19 10:15:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f9a1c7d2b84'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'billing',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(), nullable=True),
        sa.Column('plan_id', sa.String(), nullable=True),
        sa.Column('price_id', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True, server_default='inactive'),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_mode_enabled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('max_mode_usage_basic', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_mode_usage_premium', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_mode_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('user_id', name='uq_billing_user_id'),
        sa.CheckConstraint('max_mode_usage_basic >= 0', name='ck_billing_max_mode_usage_basic_non_negative'),
        sa.CheckConstraint('max_mode_usage_premium >= 0', name='ck_billing_max_mode_usage_premium_non_negative'),
    )
    op.create_index('idx_billing_stripe_customer_id', 'billing', ['stripe_customer_id'])
    op.create_index('idx_billing_stripe_subscription_id', 'billing', ['stripe_subscription_id'])

    op.create_table(
        'usage_quota',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('plan_tier', sa.String(), nullable=False),
        sa.Column('limit_amount', sa.Integer(), nullable=True),
        sa.Column('used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        # ON CONFLICT (user_id, category) target for the atomic usage upsert
        sa.UniqueConstraint('user_id', 'category', name='uq_usage_quota_user_category'),
        sa.CheckConstraint('used >= 0', name='ck_usage_quota_used_non_negative'),
    )
    op.create_index('idx_usage_quota_period_end', 'usage_quota', ['period_end'])


def downgrade():
    op.drop_index('idx_usage_quota_period_end', table_name='usage_quota')
    op.drop_table('usage_quota')
    op.drop_index('idx_billing_stripe_subscription_id', table_name='billing')
    op.drop_index('idx_billing_stripe_customer_id', table_name='billing')
    op.drop_table('billing')
