"""Initial settlement ledger schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(28, 9)
PRICE = sa.Numeric(38, 18)
PENDING_ONLY = "status = 'pending'"
ACTIVE_ONLY = "status IN ('waiting_leg1', 'waiting_leg2')"


def upgrade() -> None:
    # Wallets table
    op.create_table(
        'wallets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('address', sa.String(64), nullable=False),
        sa.Column('owner_ref', sa.String(64), nullable=False),
        sa.Column('label', sa.String(100), nullable=True),
        sa.Column('telegram_chat_id', sa.BigInteger(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('address')
    )
    op.create_index('ix_wallets_owner_ref', 'wallets', ['owner_ref'])

    # Balances table
    op.create_table(
        'balances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=False),
        sa.Column('amount', AMOUNT, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('wallet_id'),
        sa.CheckConstraint('amount >= 0', name='ck_balances_non_negative')
    )

    # Holdings table
    op.create_table(
        'holdings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=False),
        sa.Column('asset', sa.String(64), nullable=False),
        sa.Column('symbol', sa.String(20), nullable=True),
        sa.Column('amount', AMOUNT, nullable=False),
        sa.Column('pending_amount', AMOUNT, nullable=False),
        sa.Column('total_cost_basis', AMOUNT, nullable=False),
        sa.Column('average_entry_price', PRICE, nullable=False),
        sa.Column('last_price_usd', PRICE, nullable=True),
        sa.Column('last_price_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('amount >= 0', name='ck_holdings_non_negative')
    )
    op.create_index('ix_holdings_wallet_asset', 'holdings', ['wallet_id', 'asset'], unique=True)

    # Bridge operations table
    op.create_table(
        'bridge_operations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=False),
        sa.Column('direction', sa.String(20), nullable=False),
        sa.Column('amount', AMOUNT, nullable=False),
        sa.Column('intermediate_amount', AMOUNT, nullable=True),
        sa.Column('settled_amount', AMOUNT, nullable=True),
        sa.Column('destination_address', sa.String(64), nullable=True),
        sa.Column('leg1_id', sa.String(64), nullable=True),
        sa.Column('leg1_deposit_address', sa.String(128), nullable=True),
        sa.Column('leg1_send_ref', sa.String(128), nullable=True),
        sa.Column('leg2_id', sa.String(64), nullable=True),
        sa.Column('leg2_deposit_address', sa.String(128), nullable=True),
        sa.Column('leg2_send_ref', sa.String(128), nullable=True),
        sa.Column('send_locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('outbound_reference', sa.String(128), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('recovered', sa.Boolean(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('leg1_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('leg2_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_bridge_operations_wallet_id', 'bridge_operations', ['wallet_id'])
    op.create_index('ix_bridge_operations_status', 'bridge_operations', ['status'])
    op.create_index(
        'ix_bridge_operations_one_active',
        'bridge_operations',
        ['wallet_id', 'direction'],
        unique=True,
        sqlite_where=sa.text(ACTIVE_ONLY),
        postgresql_where=sa.text(ACTIVE_ONLY),
    )

    # Transactions table
    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=False),
        sa.Column('reference', sa.String(88), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('asset', sa.String(64), nullable=False),
        sa.Column('symbol', sa.String(20), nullable=True),
        sa.Column('amount', AMOUNT, nullable=False),
        sa.Column('settlement_value', AMOUNT, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('chain_reference', sa.String(128), nullable=True),
        sa.Column('cost_basis_at_sale', AMOUNT, nullable=True),
        sa.Column('realized_pnl', AMOUNT, nullable=True),
        sa.Column('operation_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id']),
        sa.ForeignKeyConstraint(['operation_id'], ['bridge_operations.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference')
    )
    op.create_index('ix_transactions_wallet_id', 'transactions', ['wallet_id'])
    op.create_index('ix_transactions_operation_id', 'transactions', ['operation_id'])
    op.create_index(
        'ix_transactions_one_pending',
        'transactions',
        ['wallet_id', 'kind'],
        unique=True,
        sqlite_where=sa.text(PENDING_ONLY),
        postgresql_where=sa.text(PENDING_ONLY),
    )

    # Swap jobs table
    op.create_table(
        'swap_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=False),
        sa.Column('direction', sa.String(10), nullable=False),
        sa.Column('asset', sa.String(64), nullable=False),
        sa.Column('symbol', sa.String(20), nullable=True),
        sa.Column('decimals', sa.Integer(), nullable=True),
        sa.Column('settlement_amount', AMOUNT, nullable=False),
        sa.Column('asset_amount', AMOUNT, nullable=False),
        sa.Column('quote_snapshot', sa.Text(), nullable=False),
        sa.Column('restore_snapshot', sa.Text(), nullable=False),
        sa.Column('notify_chat_id', sa.BigInteger(), nullable=True),
        sa.Column('settlement_reference', sa.String(128), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id']),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_id')
    )
    op.create_index('ix_swap_jobs_status', 'swap_jobs', ['status'])

    # Audit events table
    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('subject_type', sa.String(30), nullable=False),
        sa.Column('subject_id', sa.Integer(), nullable=False),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_events_kind', 'audit_events', ['kind'])


def downgrade() -> None:
    op.drop_table('audit_events')
    op.drop_table('swap_jobs')
    op.drop_table('transactions')
    op.drop_table('bridge_operations')
    op.drop_table('holdings')
    op.drop_table('balances')
    op.drop_table('wallets')
