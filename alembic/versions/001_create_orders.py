"""create orders and redeem codes

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

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
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('checkout_batch_id', sa.String(length=36), nullable=True),
        sa.Column('checkout_reference', sa.String(length=255), nullable=True),
        sa.Column('contact_email', sa.String(length=320), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=False),
        sa.Column('generation_state', sa.String(length=20), nullable=False),
        sa.Column('generation_attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('generation_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('report_content', sa.JSON(), nullable=True),
        sa.Column('notified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pet_name', sa.String(length=100), nullable=False),
        sa.Column('species', sa.String(length=50), nullable=False),
        sa.Column('breed', sa.String(length=100), nullable=True),
        sa.Column('gender', sa.String(length=20), nullable=True),
        sa.Column('birth_date', sa.String(length=20), nullable=True),
        sa.Column('birth_time', sa.String(length=20), nullable=True),
        sa.Column('birth_location', sa.String(length=255), nullable=True),
        sa.Column('soul_type', sa.String(length=100), nullable=True),
        sa.Column('superpower', sa.String(length=100), nullable=True),
        sa.Column('stranger_reaction', sa.String(length=100), nullable=True),
        sa.Column('language', sa.String(length=10), nullable=False),
        sa.Column('occasion_mode', sa.String(length=20), nullable=False),
        sa.Column('share_token', sa.String(length=64), nullable=False),
        sa.Column('redeem_code', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('share_token')
    )
    op.create_index(op.f('ix_orders_checkout_batch_id'), 'orders', ['checkout_batch_id'])
    op.create_index(op.f('ix_orders_contact_email'), 'orders', ['contact_email'])
    op.create_index(op.f('ix_orders_created_at'), 'orders', ['created_at'])
    op.create_index('idx_orders_generation_state', 'orders', ['generation_state', 'retry_at'])

    op.create_table(
        'redeem_codes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('tier', sa.String(length=20), nullable=False, server_default='premium'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('current_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_redeem_codes_code'), 'redeem_codes', ['code'], unique=True)


def downgrade() -> None:
    op.drop_index(op.f('ix_redeem_codes_code'), table_name='redeem_codes')
    op.drop_table('redeem_codes')
    op.drop_index('idx_orders_generation_state', table_name='orders')
    op.drop_index(op.f('ix_orders_created_at'), table_name='orders')
    op.drop_index(op.f('ix_orders_contact_email'), table_name='orders')
    op.drop_index(op.f('ix_orders_checkout_batch_id'), table_name='orders')
    op.drop_table('orders')
