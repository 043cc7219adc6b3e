"""Create order_lookup_sessions and orders tables

Revision ID: 20261018_order_lookup
Revises: 20261018_coupons
Create Date: 2026-10-18

Adds tables for guest order lookup:
- order_lookup_sessions: Per-email verification codes and lookup tokens
- orders: Order summaries visible to verified guests
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import text


# revision identifiers, used by Alembic.
revision = '20261018_order_lookup'
down_revision = '20261018_coupons'
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
    """Create order lookup tables."""

    if not table_exists('order_lookup_sessions'):
        op.create_table(
            'order_lookup_sessions',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('email', sa.String(191), nullable=False, comment='Normalized (trimmed, lowercase) email'),
            sa.Column('code_hash', sa.String(255), nullable=True),
            sa.Column('code_expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_code_sent_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('attempt_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('send_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('active_token', sa.String(80), nullable=True),
            sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
            sa.UniqueConstraint('email', name='uq_order_lookup_sessions_email'),
        )
        op.create_index('ix_order_lookup_sessions_active_token', 'order_lookup_sessions', ['active_token'])

    if not table_exists('orders'):
        op.create_table(
            'orders',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('order_number', sa.String(50), nullable=False),
            sa.Column('customer_email', sa.String(191), nullable=False),
            sa.Column('status', sa.String(30), nullable=False, server_default='PENDING'),
            sa.Column('subtotal', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('total_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        )
        op.create_index('ix_orders_order_number', 'orders', ['order_number'], unique=True)
        op.create_index('ix_orders_customer_email', 'orders', ['customer_email'])


def downgrade() -> None:
    """Drop order lookup tables."""

    if table_exists('orders'):
        op.drop_index('ix_orders_customer_email', table_name='orders')
        op.drop_index('ix_orders_order_number', table_name='orders')
        op.drop_table('orders')

    if table_exists('order_lookup_sessions'):
        op.drop_index('ix_order_lookup_sessions_active_token', table_name='order_lookup_sessions')
        op.drop_table('order_lookup_sessions')
