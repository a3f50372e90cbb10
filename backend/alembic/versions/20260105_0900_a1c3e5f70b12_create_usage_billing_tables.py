"""create customers, usage_ledger and invoices

Revision ID: a1c3e5f70b12
Revises:
Create Date: 2026-01-05 09:00:00

Customers are keyed by CRM contact id. The usage ledger is append-only apart
from the one-time invoice_id claim; invoices are created before the ledger so
that the claim column can reference them.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = 'a1c3e5f70b12'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the three billing tables and their indexes."""
    op.create_table(
        'customers',
        sa.Column('crm_contact_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('dwolla_customer_href', sa.String(), nullable=True),
        sa.Column(
            'dwolla_funding_href',
            sa.String(),
            nullable=True,
            comment='Funding source debited by billing runs; customers without one are never billed'
        ),
        sa.Column(
            'status',
            sa.Enum('pending', 'active', name='customerstatus', native_enum=False, length=16),
            server_default='pending',
            nullable=False
        ),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('crm_contact_id')
    )

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('crm_contact_id', sa.String(), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False, comment='Inclusive, naive UTC'),
        sa.Column('period_end', sa.DateTime(), nullable=False, comment='Exclusive, naive UTC'),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('dwolla_transfer_href', sa.String(), nullable=True),
        sa.Column(
            'status',
            sa.Enum('initiated', 'completed', 'failed', name='invoicestatus', native_enum=False, length=16),
            server_default='initiated',
            nullable=False
        ),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['crm_contact_id'], ['customers.crm_contact_id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'invoices_crm_contact_idx',
        'invoices',
        ['crm_contact_id', 'period_start', 'period_end']
    )
    op.create_index(
        op.f('ix_invoices_dwolla_transfer_href'),
        'invoices',
        ['dwolla_transfer_href']
    )

    op.create_table(
        'usage_ledger',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('crm_contact_id', sa.String(), nullable=False),
        sa.Column('units', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=False, comment='Naive UTC'),
        sa.Column('invoice_id', sa.Integer(), nullable=True, comment='Set once by the billing run that claims the row'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.CheckConstraint('units > 0', name='usage_ledger_units_positive'),
        sa.ForeignKeyConstraint(['crm_contact_id'], ['customers.crm_contact_id']),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key')
    )
    op.create_index('usage_idx', 'usage_ledger', ['crm_contact_id', 'occurred_at'])
    op.create_index(op.f('ix_usage_ledger_invoice_id'), 'usage_ledger', ['invoice_id'])
    op.create_index(
        'usage_ledger_unbilled_idx',
        'usage_ledger',
        ['crm_contact_id', 'occurred_at'],
        postgresql_where=sa.text('invoice_id IS NULL'),
        sqlite_where=sa.text('invoice_id IS NULL')
    )


def downgrade() -> None:
    """Drop the billing tables."""
    op.drop_index('usage_ledger_unbilled_idx', table_name='usage_ledger')
    op.drop_index(op.f('ix_usage_ledger_invoice_id'), table_name='usage_ledger')
    op.drop_index('usage_idx', table_name='usage_ledger')
    op.drop_table('usage_ledger')

    op.drop_index(op.f('ix_invoices_dwolla_transfer_href'), table_name='invoices')
    op.drop_index('invoices_crm_contact_idx', table_name='invoices')
    op.drop_table('invoices')

    op.drop_table('customers')
