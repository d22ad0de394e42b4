"""Loyalty wallets and transaction ledger.

Revision ID: 20261017_01
Revises: 
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261017_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


loyalty_reason = sa.Enum(
    "purchase",
    "refund",
    "adjustment",
    "signup",
    "promotion",
    name="loyalty_reason",
)


def upgrade() -> None:
    op.create_table(
        "loyalty_wallets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("points_balance >= 0", name="ck_loyalty_wallets_balance_non_negative"),
        sa.CheckConstraint("lifetime_earned >= 0", name="ck_loyalty_wallets_earned_non_negative"),
        sa.CheckConstraint("lifetime_redeemed >= 0", name="ck_loyalty_wallets_redeemed_non_negative"),
    )
    op.create_index("ix_loyalty_wallets_customer_id", "loyalty_wallets", ["customer_id"], unique=True)

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "wallet_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_wallets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", loyalty_reason, nullable=False),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_loyalty_transactions_wallet_id", "loyalty_transactions", ["wallet_id"])
    op.create_index(
        "idx_loyalty_txn_customer_created",
        "loyalty_transactions",
        ["customer_id", "created_at"],
    )
    op.create_index("idx_loyalty_txn_order", "loyalty_transactions", ["order_id"])


def downgrade() -> None:
    op.drop_index("idx_loyalty_txn_order", table_name="loyalty_transactions")
    op.drop_index("idx_loyalty_txn_customer_created", table_name="loyalty_transactions")
    op.drop_index("ix_loyalty_transactions_wallet_id", table_name="loyalty_transactions")
    op.drop_table("loyalty_transactions")
    op.drop_index("ix_loyalty_wallets_customer_id", table_name="loyalty_wallets")
    op.drop_table("loyalty_wallets")
    loyalty_reason.drop(op.get_bind(), checkfirst=True)
