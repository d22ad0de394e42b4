"""Loyalty wallet ledger: award, redeem, adjust and read paths."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_api.core.settings import settings
from storefront_api.models.loyalty import (
    LoyaltyReason,
    LoyaltyTransaction,
    LoyaltyTransactionSource,
    LoyaltyWallet,
)
from storefront_api.observability.loyalty import LoyaltyLedgerTelemetry, get_loyalty_telemetry
from storefront_api.services.loyalty.rules import earn_points_for_amount, normalize_redeem_points, to_int


TransactionType = Literal["earn", "redeem", "adjustment"]


class InsufficientBalanceError(ValueError):
    """Raised by strict adjustments that would drive a wallet negative."""

    def __init__(self, *, balance: int, delta: int) -> None:
        super().__init__(f"Insufficient loyalty balance: balance={balance} delta={delta}")
        self.balance = balance
        self.delta = delta


@dataclass(frozen=True)
class LoyaltyWalletSnapshot:
    """Read-only view of a wallet's balance and lifetime counters."""

    customer_id: str
    wallet_id: str
    points_balance: int
    lifetime_earned: int
    lifetime_redeemed: int

    @classmethod
    def empty(cls, customer_id: str = "") -> "LoyaltyWalletSnapshot":
        return cls(
            customer_id=customer_id,
            wallet_id="",
            points_balance=0,
            lifetime_earned=0,
            lifetime_redeemed=0,
        )

    @classmethod
    def from_wallet(cls, wallet: LoyaltyWallet) -> "LoyaltyWalletSnapshot":
        return cls(
            customer_id=wallet.customer_id,
            wallet_id=str(wallet.id),
            points_balance=to_int(wallet.points_balance),
            lifetime_earned=to_int(wallet.lifetime_earned),
            lifetime_redeemed=to_int(wallet.lifetime_redeemed),
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "customerId": self.customer_id,
            "walletId": self.wallet_id,
            "pointsBalance": self.points_balance,
            "lifetimeEarned": self.lifetime_earned,
            "lifetimeRedeemed": self.lifetime_redeemed,
        }


@dataclass(frozen=True)
class AwardResult:
    changed: bool
    snapshot: LoyaltyWalletSnapshot


@dataclass(frozen=True)
class PartialRedemption:
    """A redemption that was clamped to the available balance."""

    requested: int
    redeemed: int

    @property
    def shortfall(self) -> int:
        return self.requested - self.redeemed


@dataclass(frozen=True)
class RedeemResult:
    changed: bool
    snapshot: LoyaltyWalletSnapshot
    redeemed_points: int
    requested_points: int

    @property
    def is_partial(self) -> bool:
        return 0 < self.redeemed_points < self.requested_points

    def as_partial(self) -> PartialRedemption | None:
        if not self.is_partial:
            return None
        return PartialRedemption(requested=self.requested_points, redeemed=self.redeemed_points)


@dataclass(frozen=True)
class LoyaltyHistoryEntry:
    id: UUID
    type: TransactionType
    points_delta: int
    reason: str
    note: Optional[str]
    order_id: Optional[str]
    source: Optional[str]
    created_at: datetime
    balance_after: int


@dataclass
class LoyaltyHistoryWindow:
    balance: int
    entries: list[LoyaltyHistoryEntry] = field(default_factory=list)
    next_cursor: Tuple[datetime, UUID] | None = None


def _normalize_customer_id(value: Any) -> str:
    return str(value if value is not None else "").strip()


def _normalize_order_id(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def _normalize_note(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if not stripped:
        return None
    return stripped[: settings.loyalty_note_max_length]


def _transaction_type(delta: int) -> TransactionType:
    if delta > 0:
        return "earn"
    if delta < 0:
        return "redeem"
    return "adjustment"


class LoyaltyLedgerService:
    """Sole writer of loyalty wallets and their transaction log.

    Every balance-changing operation inserts its transaction row and updates
    the wallet inside the same database transaction, then commits. Failures
    roll the session back and propagate to the caller.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        telemetry: LoyaltyLedgerTelemetry | None = None,
        conflict_attempts: int | None = None,
    ) -> None:
        self._db = db_session
        self._telemetry = telemetry or get_loyalty_telemetry()
        self._conflict_attempts = max(1, conflict_attempts or settings.loyalty_redeem_conflict_attempts)

    async def get_snapshot(self, customer_id: str) -> LoyaltyWalletSnapshot | None:
        """Return the wallet snapshot, or ``None`` when the customer has no wallet."""

        customer = _normalize_customer_id(customer_id)
        if not customer:
            return None
        wallet = await self._load_wallet(customer)
        if wallet is None:
            return None
        return LoyaltyWalletSnapshot.from_wallet(wallet)

    async def ensure_wallet(self, customer_id: str) -> LoyaltyWalletSnapshot:
        """Create the wallet if missing and return its snapshot."""

        customer = _normalize_customer_id(customer_id)
        if not customer:
            raise ValueError("customer_id is required")
        try:
            wallet = await self._ensure_wallet_row(customer)
            snapshot = LoyaltyWalletSnapshot.from_wallet(wallet)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        return snapshot

    async def award(
        self,
        customer_id: str,
        points: Any,
        *,
        reason: LoyaltyReason = LoyaltyReason.PURCHASE,
        order_id: str | None = None,
        note: str | None = None,
        source: LoyaltyTransactionSource | str | None = None,
    ) -> AwardResult:
        """Credit points to a customer, creating the wallet on first award."""

        customer = _normalize_customer_id(customer_id)
        amount = to_int(points)
        reason = LoyaltyReason(reason)
        if not customer or amount <= 0:
            snapshot = await self.get_snapshot(customer)
            self._telemetry.record_award(reason.value, 0, changed=False)
            return AwardResult(changed=False, snapshot=snapshot or LoyaltyWalletSnapshot.empty(customer))

        try:
            wallet = await self._ensure_wallet_row(customer)
            await self._db.execute(
                update(LoyaltyWallet)
                .where(LoyaltyWallet.id == wallet.id)
                .values(
                    points_balance=LoyaltyWallet.points_balance + amount,
                    lifetime_earned=LoyaltyWallet.lifetime_earned + amount,
                )
                .execution_options(synchronize_session=False)
            )
            self._add_transaction(
                wallet,
                delta=amount,
                reason=reason,
                order_id=order_id,
                note=note,
                source=source,
            )
            await self._db.flush()
            await self._db.refresh(wallet)
            snapshot = LoyaltyWalletSnapshot.from_wallet(wallet)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        self._telemetry.record_award(reason.value, amount, changed=True)
        logger.info(
            "Awarded loyalty points",
            customer_id=customer,
            points=amount,
            reason=reason.value,
            order_id=order_id,
            balance=snapshot.points_balance,
        )
        return AwardResult(changed=True, snapshot=snapshot)

    async def award_for_order(
        self,
        customer_id: str,
        *,
        amount_cents: int,
        currency: str,
        order_id: str | None,
        note: str | None = None,
    ) -> AwardResult:
        """Award purchase points for a billable order total."""

        points = earn_points_for_amount(amount_cents, currency)
        return await self.award(
            customer_id,
            points,
            reason=LoyaltyReason.PURCHASE,
            order_id=order_id,
            note=note,
            source=LoyaltyTransactionSource.CHECKOUT,
        )

    async def redeem(
        self,
        customer_id: str,
        points: Any,
        *,
        reason: LoyaltyReason = LoyaltyReason.PURCHASE,
        order_id: str | None = None,
        note: str | None = None,
        source: LoyaltyTransactionSource | str | None = None,
        whole_increments: bool = False,
    ) -> RedeemResult:
        """Debit up to ``points`` from the wallet, clamping to the available balance.

        With ``whole_increments`` the clamped amount is also rounded down to the
        redemption increment, and nothing is redeemed below the minimum.
        """

        customer = _normalize_customer_id(customer_id)
        requested = max(0, to_int(points))
        reason = LoyaltyReason(reason)
        if not customer or requested == 0:
            snapshot = await self.get_snapshot(customer)
            self._telemetry.record_redemption(requested, 0)
            return RedeemResult(
                changed=False,
                snapshot=snapshot or LoyaltyWalletSnapshot.empty(customer),
                redeemed_points=0,
                requested_points=requested,
            )

        redeemed = 0
        try:
            wallet = await self._ensure_wallet_row(customer, for_update=True)
            for attempt in range(1, self._conflict_attempts + 1):
                redeemable = min(requested, max(0, to_int(wallet.points_balance)))
                if whole_increments:
                    redeemable = normalize_redeem_points(redeemable)
                if redeemable <= 0:
                    break
                result = await self._db.execute(
                    update(LoyaltyWallet)
                    .where(
                        LoyaltyWallet.id == wallet.id,
                        LoyaltyWallet.points_balance >= redeemable,
                    )
                    .values(
                        points_balance=LoyaltyWallet.points_balance - redeemable,
                        lifetime_redeemed=LoyaltyWallet.lifetime_redeemed + redeemable,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    redeemed = redeemable
                    break
                # A concurrent redemption moved the balance; re-read and re-clamp.
                self._telemetry.record_redemption_conflict()
                logger.warning(
                    "Loyalty redemption lost balance race",
                    customer_id=customer,
                    attempt=attempt,
                    requested=requested,
                    redeemable=redeemable,
                )
                await self._db.refresh(wallet)

            if redeemed > 0:
                self._add_transaction(
                    wallet,
                    delta=-redeemed,
                    reason=reason,
                    order_id=order_id,
                    note=note,
                    source=source,
                )
                await self._db.flush()
                await self._db.refresh(wallet)
            snapshot = LoyaltyWalletSnapshot.from_wallet(wallet)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        self._telemetry.record_redemption(requested, redeemed)
        if redeemed == 0:
            logger.info("Loyalty redemption skipped: empty balance", customer_id=customer, requested=requested)
            return RedeemResult(
                changed=False,
                snapshot=snapshot,
                redeemed_points=0,
                requested_points=requested,
            )

        logger.info(
            "Redeemed loyalty points",
            customer_id=customer,
            requested=requested,
            redeemed=redeemed,
            order_id=order_id,
            balance=snapshot.points_balance,
        )
        return RedeemResult(
            changed=True,
            snapshot=snapshot,
            redeemed_points=redeemed,
            requested_points=requested,
        )

    async def adjust(
        self,
        customer_id: str,
        points: Any,
        *,
        note: str | None = None,
        source: LoyaltyTransactionSource | str | None = LoyaltyTransactionSource.ADMIN,
    ) -> LoyaltyWalletSnapshot:
        """Apply a signed operator adjustment; never clamps."""

        customer = _normalize_customer_id(customer_id)
        if not customer:
            raise ValueError("customer_id is required")
        delta = to_int(points)
        if delta == 0 or abs(delta) > settings.loyalty_max_adjustment_points:
            raise ValueError("Adjustment must be a non-zero integer within the allowed range")

        try:
            wallet = await self._ensure_wallet_row(customer, for_update=True)
            balance = to_int(wallet.points_balance)
            if balance + delta < 0:
                raise InsufficientBalanceError(balance=balance, delta=delta)

            result = await self._db.execute(
                update(LoyaltyWallet)
                .where(
                    LoyaltyWallet.id == wallet.id,
                    LoyaltyWallet.points_balance + delta >= 0,
                )
                .values(
                    points_balance=LoyaltyWallet.points_balance + delta,
                    lifetime_earned=LoyaltyWallet.lifetime_earned + max(delta, 0),
                    lifetime_redeemed=LoyaltyWallet.lifetime_redeemed + max(-delta, 0),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self._db.refresh(wallet)
                raise InsufficientBalanceError(balance=to_int(wallet.points_balance), delta=delta)

            self._add_transaction(
                wallet,
                delta=delta,
                reason=LoyaltyReason.ADJUSTMENT,
                order_id=None,
                note=note,
                source=source,
            )
            await self._db.flush()
            await self._db.refresh(wallet)
            snapshot = LoyaltyWalletSnapshot.from_wallet(wallet)
            await self._db.commit()
        except InsufficientBalanceError:
            await self._db.rollback()
            self._telemetry.record_adjustment(delta, rejected=True)
            logger.warning("Rejected loyalty adjustment", customer_id=customer, delta=delta)
            raise
        except Exception:
            await self._db.rollback()
            raise

        self._telemetry.record_adjustment(delta)
        logger.info(
            "Adjusted loyalty balance",
            customer_id=customer,
            delta=delta,
            balance=snapshot.points_balance,
            source=str(source) if source else None,
        )
        return snapshot

    async def list_history(
        self,
        customer_id: str,
        *,
        limit: int | None = None,
        cursor: Tuple[datetime, UUID] | None = None,
    ) -> LoyaltyHistoryWindow:
        """Return newest-first transactions annotated with the balance after each."""

        customer = _normalize_customer_id(customer_id)
        if not customer:
            return LoyaltyHistoryWindow(balance=0)

        wallet = await self._load_wallet(customer)
        current_balance = to_int(wallet.points_balance) if wallet else 0
        bounded_limit = max(1, min(limit or settings.loyalty_history_limit, settings.loyalty_history_limit))

        stmt = (
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.customer_id == customer)
            .order_by(LoyaltyTransaction.created_at.desc(), LoyaltyTransaction.id.desc())
        )
        running = current_balance
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(_older_than(cursor_time, cursor_id))
            newer_stmt = select(func.coalesce(func.sum(LoyaltyTransaction.delta), 0)).where(
                LoyaltyTransaction.customer_id == customer,
                or_(
                    LoyaltyTransaction.created_at > cursor_time,
                    and_(
                        LoyaltyTransaction.created_at == cursor_time,
                        LoyaltyTransaction.id >= cursor_id,
                    ),
                ),
            )
            running -= to_int((await self._db.execute(newer_stmt)).scalar_one())

        rows = list((await self._db.execute(stmt.limit(bounded_limit + 1))).scalars().all())
        has_more = len(rows) > bounded_limit
        rows = rows[:bounded_limit]

        entries: list[LoyaltyHistoryEntry] = []
        for row in rows:
            delta = to_int(row.delta)
            entries.append(
                LoyaltyHistoryEntry(
                    id=row.id,
                    type=_transaction_type(delta),
                    points_delta=delta,
                    reason=row.reason.value if isinstance(row.reason, LoyaltyReason) else str(row.reason),
                    note=row.note,
                    order_id=row.order_id,
                    source=row.source,
                    created_at=row.created_at,
                    balance_after=running,
                )
            )
            running -= delta

        next_cursor: Tuple[datetime, UUID] | None = None
        if has_more and rows:
            next_cursor = (rows[-1].created_at, rows[-1].id)

        return LoyaltyHistoryWindow(balance=current_balance, entries=entries, next_cursor=next_cursor)

    async def _load_wallet(self, customer_id: str, *, for_update: bool = False) -> LoyaltyWallet | None:
        stmt = (
            select(LoyaltyWallet)
            .where(LoyaltyWallet.customer_id == customer_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _ensure_wallet_row(self, customer_id: str, *, for_update: bool = False) -> LoyaltyWallet:
        wallet = await self._load_wallet(customer_id, for_update=for_update)
        if wallet is not None:
            return wallet

        wallet = LoyaltyWallet(
            customer_id=customer_id,
            points_balance=0,
            lifetime_earned=0,
            lifetime_redeemed=0,
        )
        self._db.add(wallet)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            logger.warning("Detected race when creating loyalty wallet", customer_id=customer_id)
            wallet = await self._load_wallet(customer_id, for_update=for_update)
            if wallet is None:
                raise
            return wallet

        logger.info("Created loyalty wallet", customer_id=customer_id, wallet_id=str(wallet.id))
        return wallet

    def _add_transaction(
        self,
        wallet: LoyaltyWallet,
        *,
        delta: int,
        reason: LoyaltyReason,
        order_id: str | None,
        note: str | None,
        source: LoyaltyTransactionSource | str | None,
    ) -> LoyaltyTransaction:
        source_value = source.value if isinstance(source, LoyaltyTransactionSource) else source
        transaction = LoyaltyTransaction(
            wallet_id=wallet.id,
            customer_id=wallet.customer_id,
            order_id=_normalize_order_id(order_id),
            delta=delta,
            reason=reason,
            source=source_value,
            note=_normalize_note(note),
        )
        self._db.add(transaction)
        return transaction


def _older_than(cursor_time: datetime, cursor_id: UUID):
    return or_(
        LoyaltyTransaction.created_at < cursor_time,
        and_(
            LoyaltyTransaction.created_at == cursor_time,
            LoyaltyTransaction.id < cursor_id,
        ),
    )


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    timestamp_str, identifier_str = raw.split("|", 1)
    return datetime.fromisoformat(timestamp_str), UUID(identifier_str)
