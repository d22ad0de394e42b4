"""Loyalty wallet and transaction ledger models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from storefront_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoyaltyReason(str, Enum):
    """Why a balance changed."""

    PURCHASE = "purchase"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    SIGNUP = "signup"
    PROMOTION = "promotion"


class LoyaltyTransactionSource(str, Enum):
    """Surface that originated a ledger write."""

    CHECKOUT = "checkout"
    MANUAL = "manual"
    ADMIN = "admin"


class LoyaltyWallet(Base):
    """Per-customer points balance with lifetime audit counters."""

    __tablename__ = "loyalty_wallets"
    __table_args__ = (
        CheckConstraint("points_balance >= 0", name="ck_loyalty_wallets_balance_non_negative"),
        CheckConstraint("lifetime_earned >= 0", name="ck_loyalty_wallets_earned_non_negative"),
        CheckConstraint("lifetime_redeemed >= 0", name="ck_loyalty_wallets_redeemed_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(String, nullable=False, unique=True, index=True)
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_earned = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    transactions = relationship(
        "LoyaltyTransaction",
        back_populates="wallet",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class LoyaltyTransaction(Base):
    """Append-only record of a single balance change."""

    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        Index("idx_loyalty_txn_customer_created", "customer_id", "created_at"),
        Index("idx_loyalty_txn_order", "order_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    wallet_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_wallets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_id = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    delta = Column(Integer, nullable=False)
    reason = Column(
        SqlEnum(
            LoyaltyReason,
            name="loyalty_reason",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    source = Column(String, nullable=True)
    note = Column(Text, nullable=True)
    # History ordering and cursors key on created_at; needs sub-second precision.
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    wallet = relationship("LoyaltyWallet", back_populates="transactions")
