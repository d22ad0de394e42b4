"""Loyalty service exports."""

from .ledger import (  # noqa: F401
    AwardResult,
    InsufficientBalanceError,
    LoyaltyHistoryEntry,
    LoyaltyHistoryWindow,
    LoyaltyLedgerService,
    LoyaltyWalletSnapshot,
    PartialRedemption,
    RedeemResult,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)
from .rules import (  # noqa: F401
    LoyaltyUiSnapshot,
    compute_loyalty,
    earn_points_for_amount,
    is_valid_redeem_request,
    normalize_redeem_points,
    points_to_credit_dollars,
)
