"""Refund adjustment line items on settlements

Revision ID: 002_settlement_adjustments
Revises: 001_settlement_engine
Create Date: 2025-02-03
"""
from alembic import op
import sqlalchemy as sa

revision = '002_settlement_adjustments'
down_revision = '001_settlement_engine'
branch_labels = None
depends_on = None


def upgrade():
    # Refunded commission already captured by each line item
    op.add_column(
        'settlement_line_items',
        sa.Column('refunded_commission', sa.Numeric(12, 2), nullable=False, server_default='0'),
    )
    op.add_column(
        'settlement_line_items',
        sa.Column('is_adjustment', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.add_column('settlement_line_items', sa.Column('original_year', sa.Integer(), nullable=True))
    op.add_column('settlement_line_items', sa.Column('original_month', sa.Integer(), nullable=True))

    # Existing line items captured whatever the record had refunded at the time
    op.execute("""
        UPDATE settlement_line_items
        SET refunded_commission = (
            SELECT r.commission_amount FROM commission_records r
            WHERE r.id = settlement_line_items.commission_record_id
        ) - commission_amount
    """)


def downgrade():
    op.drop_column('settlement_line_items', 'original_month')
    op.drop_column('settlement_line_items', 'original_year')
    op.drop_column('settlement_line_items', 'is_adjustment')
    op.drop_column('settlement_line_items', 'refunded_commission')
