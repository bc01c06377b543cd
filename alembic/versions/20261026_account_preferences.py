"""
Per-account preferences: risk limits, sizing multipliers and time zone.
"""

from alembic import op
import sqlalchemy as sa

# --- Revision metadata ---
revision = '20261026_account_preferences'
down_revision = '20261019_initial_ledger_schema'
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table('user_accounts') as batch_op:
        batch_op.add_column(sa.Column('risk_limits', sa.JSON(), nullable=True))
        batch_op.add_column(sa.Column('multipliers', sa.JSON(), nullable=True))
        batch_op.add_column(sa.Column('time_zone', sa.String(64), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table('user_accounts') as batch_op:
        batch_op.drop_column('time_zone')
        batch_op.drop_column('multipliers')
        batch_op.drop_column('risk_limits')
