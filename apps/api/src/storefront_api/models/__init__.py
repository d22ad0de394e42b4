"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    LoyaltyReason,
    LoyaltyTransaction,
    LoyaltyTransactionSource,
    LoyaltyWallet,
)
