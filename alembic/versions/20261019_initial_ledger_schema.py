"""
Initial ledger schema: user accounts, trades and cashflows.
"""

from alembic import op
import sqlalchemy as sa

# --- Revision metadata ---
revision = '20261019_initial_ledger_schema'
down_revision = None
branch_labels = None
depends_on = None

TRADE_SIDE = sa.Enum('LONG', 'SHORT', name='tradesideenum')
TRADE_KIND = sa.Enum('SHORT', 'NORMAL', 'LONG', name='tradekindenum')
TRADE_STATUS = sa.Enum('OPEN', 'CLOSED', name='tradestatusenum')


def upgrade() -> None:
    op.create_table(
        'user_accounts',
        sa.Column('user_id', sa.String(128), primary_key=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('currency', sa.String(8), nullable=False, server_default='EUR'),
        sa.Column('starting_balance', sa.Numeric(20, 8), nullable=True),
        sa.Column('current_balance', sa.Numeric(20, 8), nullable=True),
        sa.Column('monthly_expenses', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'trades',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('user_id', sa.String(128), sa.ForeignKey('user_accounts.user_id', ondelete='CASCADE'), nullable=False),
        sa.Column('symbol', sa.String(32), nullable=False),
        sa.Column('side', TRADE_SIDE, nullable=True),
        sa.Column('kind', TRADE_KIND, nullable=False),
        sa.Column('status', TRADE_STATUS, nullable=False),
        sa.Column('risk_amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('risk_pct', sa.Numeric(10, 4), nullable=False),
        sa.Column('fees', sa.Numeric(20, 8), nullable=False),
        sa.Column('size_usd', sa.Numeric(20, 8), nullable=False),
        sa.Column('leverage', sa.Numeric(10, 2), nullable=True),
        sa.Column('balance_before', sa.Numeric(20, 8), nullable=True),
        sa.Column('recommended_size', sa.Numeric(20, 8), nullable=True),
        sa.Column('oversized', sa.Boolean(), nullable=False),
        sa.Column('open_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pnl', sa.Numeric(20, 8), nullable=True),
        sa.Column('r', sa.Numeric(20, 8), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
    )
    op.create_index('ix_trades_user_id', 'trades', ['user_id'])
    op.create_index('ix_trades_symbol', 'trades', ['symbol'])
    op.create_index('ix_trades_status', 'trades', ['status'])
    op.create_index('ix_trades_user_open_at', 'trades', ['user_id', 'open_at'])
    op.create_index('ix_trades_user_closed_at', 'trades', ['user_id', 'closed_at'])

    op.create_table(
        'cashflows',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('user_id', sa.String(128), sa.ForeignKey('user_accounts.user_id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('note', sa.Text(), nullable=False),
        sa.Column('ts', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_cashflows_user_id', 'cashflows', ['user_id'])
    op.create_index('ix_cashflows_ts', 'cashflows', ['ts'])


def downgrade() -> None:
    op.drop_index('ix_cashflows_ts', table_name='cashflows')
    op.drop_index('ix_cashflows_user_id', table_name='cashflows')
    op.drop_table('cashflows')

    op.drop_index('ix_trades_user_closed_at', table_name='trades')
    op.drop_index('ix_trades_user_open_at', table_name='trades')
    op.drop_index('ix_trades_status', table_name='trades')
    op.drop_index('ix_trades_symbol', table_name='trades')
    op.drop_index('ix_trades_user_id', table_name='trades')
    op.drop_table('trades')
    op.drop_table('user_accounts')

    bind = op.get_bind()
    for enum in (TRADE_STATUS, TRADE_KIND, TRADE_SIDE):
        enum.drop(bind, checkfirst=True)
