"""API endpoints for the member loyalty wallet, redemptions and history."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, Header, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_api.api.dependencies.security import require_admin_api_key, require_checkout_api_key
from storefront_api.api.dependencies.session import require_customer_id
from storefront_api.core.errors import ApiError
from storefront_api.core.settings import settings
from storefront_api.db.session import get_session
from storefront_api.models.loyalty import LoyaltyReason, LoyaltyTransaction, LoyaltyTransactionSource
from storefront_api.services.loyalty import (
    InsufficientBalanceError,
    LoyaltyHistoryEntry,
    LoyaltyLedgerService,
    compute_loyalty,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
    is_valid_redeem_request,
    points_to_credit_dollars,
)
from storefront_api.services.loyalty.rules import to_int


router = APIRouter(prefix="/me/loyalty", tags=["loyalty"])
admin_router = APIRouter(
    prefix="/admin/loyalty",
    tags=["loyalty"],
    dependencies=[Depends(require_admin_api_key)],
)
internal_router = APIRouter(
    prefix="/internal/loyalty",
    tags=["loyalty"],
    dependencies=[Depends(require_checkout_api_key)],
)

_NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
}


class LoyaltyWalletView(BaseModel):
    balance: int
    points: int
    tier: str
    nextTierAt: Optional[int]


class LoyaltyTransactionResponse(BaseModel):
    id: UUID
    walletId: UUID
    customerId: str
    delta: int
    reason: str
    orderId: Optional[str]
    source: Optional[str]
    note: Optional[str]
    createdAt: datetime


class LoyaltyOverviewResponse(BaseModel):
    ok: bool = True
    wallet: LoyaltyWalletView
    transactions: List[LoyaltyTransactionResponse]


class LoyaltyHistoryRowResponse(BaseModel):
    id: UUID
    type: str
    pointsDelta: int
    reason: str
    note: Optional[str]
    orderId: Optional[str]
    source: Optional[str]
    createdAt: datetime
    balanceAfter: int


class LoyaltyHistoryResponse(BaseModel):
    ok: bool = True
    balance: int
    rows: List[LoyaltyHistoryRowResponse]
    nextCursor: Optional[str]


class LoyaltyWalletResponse(BaseModel):
    ok: bool = True
    requestId: str
    customerId: str
    balance: int


class RedeemRequest(BaseModel):
    points: Any = Field(None, description="Points to convert into store credit")
    note: Any = Field(None, description="Optional note stored on the transaction")


class RedeemResponse(BaseModel):
    ok: bool = True
    credit: float
    wallet: LoyaltyWalletView
    redeemedPoints: int
    requestedPoints: int
    partial: bool
    balance: int


class AdminAdjustRequest(BaseModel):
    targetUserId: Any = Field(None, description="Customer whose wallet is adjusted")
    points: Any = Field(None, description="Signed, non-zero points delta")
    note: Any = Field(None, description="Audit note")


class AdminAdjustResponse(BaseModel):
    ok: bool = True
    wallet: LoyaltyWalletView


class WalletSnapshotResponse(BaseModel):
    customerId: str
    walletId: str
    pointsBalance: int
    lifetimeEarned: int
    lifetimeRedeemed: int


class AwardRequest(BaseModel):
    customerId: str = Field(..., description="Customer receiving the points")
    points: Optional[int] = Field(None, description="Explicit points to award")
    amountCents: Optional[int] = Field(None, ge=0, description="Order total used to derive points")
    currency: str = Field("USD", description="Currency of amountCents")
    reason: LoyaltyReason = Field(LoyaltyReason.PURCHASE, description="Ledger reason")
    orderId: Optional[str] = Field(None, description="Triggering order")
    note: Optional[str] = Field(None, description="Optional note")


class AwardResponse(BaseModel):
    changed: bool
    snapshot: WalletSnapshotResponse


def _wallet_view(points_balance: int) -> LoyaltyWalletView:
    return LoyaltyWalletView(**compute_loyalty(points_balance).as_payload())


def _serialize_transaction(row: LoyaltyTransaction) -> LoyaltyTransactionResponse:
    return LoyaltyTransactionResponse(
        id=row.id,
        walletId=row.wallet_id,
        customerId=row.customer_id,
        delta=row.delta,
        reason=row.reason.value if isinstance(row.reason, LoyaltyReason) else str(row.reason),
        orderId=row.order_id,
        source=row.source,
        note=row.note,
        createdAt=row.created_at,
    )


def _serialize_history_entry(entry: LoyaltyHistoryEntry) -> LoyaltyHistoryRowResponse:
    return LoyaltyHistoryRowResponse(
        id=entry.id,
        type=entry.type,
        pointsDelta=entry.points_delta,
        reason=entry.reason,
        note=entry.note,
        orderId=entry.order_id,
        source=entry.source,
        createdAt=entry.created_at,
        balanceAfter=entry.balance_after,
    )


@router.get("", response_model=LoyaltyOverviewResponse)
async def get_loyalty_overview(
    customer_id: str = Depends(require_customer_id),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyOverviewResponse:
    """Return the tier snapshot and the most recent transactions."""

    service = LoyaltyLedgerService(db)
    snapshot = await service.get_snapshot(customer_id)
    stmt = (
        select(LoyaltyTransaction)
        .where(LoyaltyTransaction.customer_id == customer_id)
        .order_by(LoyaltyTransaction.created_at.desc(), LoyaltyTransaction.id.desc())
        .limit(settings.loyalty_overview_limit)
    )
    rows = (await db.execute(stmt)).scalars().all()
    return LoyaltyOverviewResponse(
        wallet=_wallet_view(snapshot.points_balance if snapshot else 0),
        transactions=[_serialize_transaction(row) for row in rows],
    )


@router.get("/history", response_model=LoyaltyHistoryResponse)
async def get_loyalty_history(
    limit: int = Query(settings.loyalty_history_limit, ge=1, description="Maximum rows to return"),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    customer_id: str = Depends(require_customer_id),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyHistoryResponse:
    """Return newest-first ledger rows annotated with the running balance."""

    decoded_cursor = None
    if cursor:
        try:
            decoded_cursor = decode_time_uuid_cursor(cursor)
        except ValueError as exc:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_cursor") from exc

    service = LoyaltyLedgerService(db)
    window = await service.list_history(customer_id, limit=limit, cursor=decoded_cursor)
    return LoyaltyHistoryResponse(
        balance=window.balance,
        rows=[_serialize_history_entry(entry) for entry in window.entries],
        nextCursor=encode_time_uuid_cursor(*window.next_cursor) if window.next_cursor else None,
    )


@router.get("/wallet", response_model=LoyaltyWalletResponse)
async def get_loyalty_wallet(
    response: Response,
    x_request_id: str | None = Header(None, alias="X-Request-Id"),
    customer_id: str = Depends(require_customer_id),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyWalletResponse:
    """Ensure the member has a wallet and return its balance."""

    request_id = (x_request_id or "").strip() or str(uuid4())
    service = LoyaltyLedgerService(db)
    snapshot = await service.ensure_wallet(customer_id)

    response.headers.update(_NO_STORE_HEADERS)
    response.headers["X-Request-Id"] = request_id
    return LoyaltyWalletResponse(
        requestId=request_id,
        customerId=snapshot.customer_id,
        balance=snapshot.points_balance,
    )


@router.post("/redeem", response_model=RedeemResponse)
async def redeem_loyalty_points(
    payload: RedeemRequest,
    customer_id: str = Depends(require_customer_id),
    db: AsyncSession = Depends(get_session),
) -> RedeemResponse:
    """Convert points into store credit dollars."""

    requested = to_int(payload.points, fallback=0)
    if not is_valid_redeem_request(requested):
        raise ApiError(
            status.HTTP_400_BAD_REQUEST,
            "invalid_points",
            message=(
                f"Invalid points. Min {settings.loyalty_redeem_min_points}, "
                f"multiples of {settings.loyalty_redeem_increment}."
            ),
            min=settings.loyalty_redeem_min_points,
            step=settings.loyalty_redeem_increment,
        )

    service = LoyaltyLedgerService(db)
    result = await service.redeem(
        customer_id,
        requested,
        note=payload.note if isinstance(payload.note, str) else None,
        source=LoyaltyTransactionSource.MANUAL,
        whole_increments=True,
    )
    if not result.changed:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "insufficient_points")

    balance = result.snapshot.points_balance
    return RedeemResponse(
        credit=float(points_to_credit_dollars(result.redeemed_points)),
        wallet=_wallet_view(balance),
        redeemedPoints=result.redeemed_points,
        requestedPoints=result.requested_points,
        partial=result.is_partial,
        balance=balance,
    )


@admin_router.post("/adjust", response_model=AdminAdjustResponse)
async def adjust_loyalty_balance(
    payload: AdminAdjustRequest,
    db: AsyncSession = Depends(get_session),
) -> AdminAdjustResponse:
    """Apply an operator credit or debit to any customer's wallet."""

    target = payload.targetUserId.strip() if isinstance(payload.targetUserId, str) else ""
    points = to_int(payload.points, fallback=0)
    if not target or points == 0 or abs(points) > settings.loyalty_max_adjustment_points:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_request")

    service = LoyaltyLedgerService(db)
    try:
        snapshot = await service.adjust(
            target,
            points,
            note=payload.note if isinstance(payload.note, str) else None,
            source=LoyaltyTransactionSource.ADMIN,
        )
    except InsufficientBalanceError as exc:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "insufficient_balance") from exc

    return AdminAdjustResponse(wallet=_wallet_view(snapshot.points_balance))


@internal_router.post("/award", response_model=AwardResponse)
async def award_loyalty_points(
    payload: AwardRequest,
    db: AsyncSession = Depends(get_session),
) -> AwardResponse:
    """Credit points from checkout; derives points from the order total when omitted."""

    service = LoyaltyLedgerService(db)
    if payload.points is None and payload.amountCents is not None:
        result = await service.award_for_order(
            payload.customerId,
            amount_cents=payload.amountCents,
            currency=payload.currency,
            order_id=payload.orderId,
            note=payload.note,
        )
    else:
        result = await service.award(
            payload.customerId,
            payload.points or 0,
            reason=payload.reason,
            order_id=payload.orderId,
            note=payload.note,
            source=LoyaltyTransactionSource.CHECKOUT,
        )
    return AwardResponse(
        changed=result.changed,
        snapshot=WalletSnapshotResponse(**result.snapshot.as_payload()),
    )
