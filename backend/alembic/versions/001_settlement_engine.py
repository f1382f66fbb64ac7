"""Commission rules, records, settlements, payouts and invoices

Revision ID: 001_settlement_engine
Revises: None
Create Date: 2025-01-06
"""
from alembic import op
import sqlalchemy as sa

revision = '001_settlement_engine'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'commission_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('seller_id', sa.String(), nullable=True),
        sa.Column('category_id', sa.String(), nullable=True),
        sa.Column('commission_rate', sa.Numeric(7, 4), nullable=False),
        sa.Column('fixed_fee', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('min_commission', sa.Numeric(12, 2), nullable=True),
        sa.Column('max_commission', sa.Numeric(12, 2), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('effective_date', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('last_modified_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_commission_rules_seller_id', 'commission_rules', ['seller_id'])
    op.create_index('ix_commission_rules_category_id', 'commission_rules', ['category_id'])
    op.create_index('ix_commission_rules_effective_date', 'commission_rules', ['effective_date'])

    op.create_table(
        'commission_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.String(), nullable=False),
        sa.Column('payment_transaction_id', sa.String(), nullable=True),
        sa.Column('seller_id', sa.String(), nullable=False),
        sa.Column('category_id', sa.String(), nullable=True),
        sa.Column('gross_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('commission_rate', sa.Numeric(7, 4), nullable=False),
        sa.Column('commission_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('net_payout', sa.Numeric(12, 2), nullable=False),
        sa.Column('refunded_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('refunded_commission', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('last_refund_at', sa.DateTime(), nullable=True),
        sa.Column('commission_rule_id', sa.Integer(), nullable=True),
        sa.Column('applied_rule_description', sa.Text(), nullable=True),
        sa.Column('order_completed_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('order_id', 'seller_id', name='uq_commission_records_order_seller'),
    )
    op.create_index('ix_commission_records_order_id', 'commission_records', ['order_id'])
    op.create_index('ix_commission_records_payment_transaction_id', 'commission_records', ['payment_transaction_id'])
    op.create_index('ix_commission_records_seller_id', 'commission_records', ['seller_id'])
    op.create_index('ix_commission_records_commission_rule_id', 'commission_records', ['commission_rule_id'])
    op.create_index('ix_commission_records_order_completed_at', 'commission_records', ['order_completed_at'])

    op.create_table(
        'settlements',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('seller_id', sa.String(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('total_gross', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total_refunds', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total_commission', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total_net', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('order_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('audit_notes', sa.Text(), nullable=True),
        sa.Column('generated_at', sa.DateTime(), nullable=False),
        sa.Column('regenerated_at', sa.DateTime(), nullable=True),
        sa.Column('finalized_at', sa.DateTime(), nullable=True),
        sa.Column('finalized_by', sa.String(), nullable=True),
        sa.Column('invoiced_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_settlements_seller_id', 'settlements', ['seller_id'])
    # One live settlement per seller and month; cancelled ones don't count
    op.create_index(
        'uq_settlements_seller_period_live',
        'settlements',
        ['seller_id', 'year', 'month'],
        unique=True,
        postgresql_where=sa.text("status != 'cancelled'"),
        sqlite_where=sa.text("status != 'cancelled'"),
    )

    op.create_table(
        'settlement_line_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('settlement_id', sa.Integer(), sa.ForeignKey('settlements.id'), nullable=False),
        sa.Column('commission_record_id', sa.Integer(), sa.ForeignKey('commission_records.id'), nullable=False),
        sa.Column('order_id', sa.String(), nullable=False),
        sa.Column('order_completed_at', sa.DateTime(), nullable=False),
        sa.Column('gross_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('refund_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('commission_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('net_amount', sa.Numeric(12, 2), nullable=False),
    )
    op.create_index('ix_settlement_line_items_settlement_id', 'settlement_line_items', ['settlement_id'])
    op.create_index('ix_settlement_line_items_commission_record_id', 'settlement_line_items', ['commission_record_id'])

    op.create_table(
        'payouts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('seller_id', sa.String(), nullable=False),
        sa.Column('settlement_id', sa.Integer(), sa.ForeignKey('settlements.id'), nullable=True, unique=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(20), nullable=False, server_default='scheduled'),
        sa.Column('scheduled_date', sa.DateTime(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('batch_id', sa.String(), nullable=True),
        sa.Column('rail_reference', sa.String(), nullable=True),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('audit_note', sa.Text(), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payouts_seller_id', 'payouts', ['seller_id'])
    op.create_index('ix_payouts_status', 'payouts', ['status'])
    op.create_index('ix_payouts_scheduled_date', 'payouts', ['scheduled_date'])
    op.create_index('ix_payouts_batch_id', 'payouts', ['batch_id'])

    op.create_table(
        'invoice_sequences',
        sa.Column('year', sa.Integer(), primary_key=True),
        sa.Column('current_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'commission_invoices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('invoice_number', sa.String(), nullable=False),
        sa.Column('seller_id', sa.String(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('invoice_type', sa.String(20), nullable=False, server_default='standard'),
        sa.Column('status', sa.String(20), nullable=False, server_default='issued'),
        sa.Column('settlement_id', sa.Integer(), sa.ForeignKey('settlements.id'), nullable=True),
        sa.Column('original_invoice_id', sa.Integer(), sa.ForeignKey('commission_invoices.id'), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('issue_date', sa.DateTime(), nullable=False),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('voided_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('year', 'invoice_number', name='uq_commission_invoices_year_number'),
    )
    op.create_index('ix_commission_invoices_invoice_number', 'commission_invoices', ['invoice_number'])
    op.create_index('ix_commission_invoices_seller_id', 'commission_invoices', ['seller_id'])
    op.create_index('ix_commission_invoices_settlement_id', 'commission_invoices', ['settlement_id'])

    op.create_table(
        'commission_invoice_lines',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('invoice_id', sa.Integer(), sa.ForeignKey('commission_invoices.id'), nullable=False),
        sa.Column('commission_record_id', sa.Integer(), sa.ForeignKey('commission_records.id'), nullable=True),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
    )
    op.create_index('ix_commission_invoice_lines_invoice_id', 'commission_invoice_lines', ['invoice_id'])


def downgrade():
    op.drop_table('commission_invoice_lines')
    op.drop_table('commission_invoices')
    op.drop_table('invoice_sequences')
    op.drop_table('payouts')
    op.drop_table('settlement_line_items')
    op.drop_index('uq_settlements_seller_period_live', table_name='settlements')
    op.drop_table('settlements')
    op.drop_table('commission_records')
    op.drop_table('commission_rules')
