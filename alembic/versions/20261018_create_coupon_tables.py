"""Create coupons and coupon_usages tables

Revision ID: 20261018_coupons
Revises:
Create Date: 2026-10-18

Adds tables for checkout coupons:
- coupons: Coupon definitions with capacity and validity window
- coupon_usages: Per-customer redemptions (PENDING, USED, CANCELLED)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy import text


# revision identifiers, used by Alembic.
revision = '20261018_coupons'
down_revision = None
branch_labels = None
depends_on = None


def table_exists(table_name: str) -> bool:
    """Check if a table exists."""
    conn = op.get_bind()
    result = conn.execute(text(f"""
        SELECT EXISTS (
            SELECT 1 FROM information_schema.tables
            WHERE table_name = '{table_name}'
        )
    """))
    return result.scalar()


def upgrade() -> None:
    """Create coupon tables."""

    if not table_exists('coupons'):
        op.create_table(
            'coupons',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('code', sa.String(50), nullable=False, comment='Unique coupon code (case-insensitive)'),
            sa.Column('name', sa.String(200), nullable=False),
            sa.Column('description', sa.Text, nullable=True),
            sa.Column(
                'discount_type',
                sa.String(20),
                nullable=False,
                server_default='PERCENTAGE',
                comment='PERCENTAGE, FIXED_AMOUNT'
            ),
            sa.Column('discount_value', sa.Numeric(10, 2), nullable=False),
            sa.Column('minimum_purchase_amount', sa.Numeric(10, 2), nullable=True),
            sa.Column('max_usage_count', sa.Integer, nullable=False),
            sa.Column('current_usage_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('valid_from', sa.DateTime(timezone=True), nullable=False),
            sa.Column('valid_until', sa.DateTime(timezone=True), nullable=False),
            sa.Column('is_active', sa.Boolean, nullable=False, server_default='true'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
            sa.CheckConstraint(
                'current_usage_count <= max_usage_count',
                name='ck_coupons_usage_within_capacity'
            ),
        )
        op.create_index('ix_coupons_code', 'coupons', ['code'], unique=True)

    if not table_exists('coupon_usages'):
        op.create_table(
            'coupon_usages',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column(
                'coupon_id',
                UUID(as_uuid=True),
                sa.ForeignKey('coupons.id', ondelete='CASCADE'),
                nullable=False
            ),
            sa.Column('user_id', sa.Integer, nullable=False),
            sa.Column('user_email', sa.String(191), nullable=True),
            sa.Column('order_id', sa.Integer, nullable=True),
            sa.Column('order_total_before_discount', sa.Numeric(10, 2), nullable=False),
            sa.Column('discount_amount', sa.Numeric(10, 2), nullable=False),
            sa.Column('order_total_after_discount', sa.Numeric(10, 2), nullable=False),
            sa.Column(
                'status',
                sa.String(20),
                nullable=False,
                server_default='PENDING',
                comment='PENDING, USED, CANCELLED'
            ),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
            sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index('ix_coupon_usages_coupon_id', 'coupon_usages', ['coupon_id'])
        op.create_index('ix_coupon_usages_user_id', 'coupon_usages', ['user_id'])

        # One open application and one confirmed redemption per customer per coupon
        op.create_index(
            'uq_coupon_usages_pending_user_coupon',
            'coupon_usages',
            ['user_id', 'coupon_id'],
            unique=True,
            postgresql_where=sa.text("status = 'PENDING'")
        )
        op.create_index(
            'uq_coupon_usages_used_user_coupon',
            'coupon_usages',
            ['user_id', 'coupon_id'],
            unique=True,
            postgresql_where=sa.text("status = 'USED'")
        )


def downgrade() -> None:
    """Drop coupon tables."""

    if table_exists('coupon_usages'):
        op.drop_index('uq_coupon_usages_used_user_coupon', table_name='coupon_usages')
        op.drop_index('uq_coupon_usages_pending_user_coupon', table_name='coupon_usages')
        op.drop_index('ix_coupon_usages_user_id', table_name='coupon_usages')
        op.drop_index('ix_coupon_usages_coupon_id', table_name='coupon_usages')
        op.drop_table('coupon_usages')

    if table_exists('coupons'):
        op.drop_index('ix_coupons_code', table_name='coupons')
        op.drop_table('coupons')
