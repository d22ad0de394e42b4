from __future__ import annotations

import pytest
from sqlalchemy import func, select

from storefront_api.models.loyalty import (
    LoyaltyReason,
    LoyaltyTransaction,
    LoyaltyTransactionSource,
    LoyaltyWallet,
)
from storefront_api.observability.loyalty import get_loyalty_telemetry
from storefront_api.services.loyalty import (
    InsufficientBalanceError,
    LoyaltyLedgerService,
    PartialRedemption,
)


async def _transactions(session, customer_id: str) -> list[LoyaltyTransaction]:
    stmt = (
        select(LoyaltyTransaction)
        .where(LoyaltyTransaction.customer_id == customer_id)
        .order_by(LoyaltyTransaction.created_at)
    )
    return list((await session.execute(stmt)).scalars().all())


async def _wallet_count(session) -> int:
    return (await session.execute(select(func.count()).select_from(LoyaltyWallet))).scalar_one()


@pytest.mark.asyncio
async def test_snapshot_is_none_without_wallet(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)

        assert await service.get_snapshot("user_missing") is None
        assert await service.get_snapshot("   ") is None
        assert await _wallet_count(session) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("points", [0, -25, "abc", None, 0.4])
async def test_award_non_positive_points_is_noop(session_factory, points) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)

        result = await service.award("user_noop", points)

        assert result.changed is False
        assert result.snapshot.points_balance == 0
        assert result.snapshot.wallet_id == ""
        assert await _wallet_count(session) == 0
        assert await _transactions(session, "user_noop") == []


@pytest.mark.asyncio
async def test_award_creates_wallet_and_single_transaction(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)

        result = await service.award(
            "  user_award  ",
            "250.9",
            reason=LoyaltyReason.PROMOTION,
            order_id="  ord_1 ",
            note="welcome bonus",
        )

        assert result.changed is True
        assert result.snapshot.customer_id == "user_award"
        assert result.snapshot.points_balance == 250
        assert result.snapshot.lifetime_earned == 250
        assert result.snapshot.lifetime_redeemed == 0

        rows = await _transactions(session, "user_award")
        assert len(rows) == 1
        assert rows[0].delta == 250
        assert rows[0].reason == LoyaltyReason.PROMOTION
        assert rows[0].order_id == "ord_1"
        assert rows[0].note == "welcome bonus"
        assert str(rows[0].wallet_id) == result.snapshot.wallet_id


@pytest.mark.asyncio
async def test_award_is_not_idempotent(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)

        await service.award("user_twice", 100, order_id="ord_dup")
        second = await service.award("user_twice", 100, order_id="ord_dup")

        assert second.snapshot.points_balance == 200
        assert second.snapshot.lifetime_earned == 200
        rows = await _transactions(session, "user_twice")
        assert [row.delta for row in rows] == [100, 100]


@pytest.mark.asyncio
async def test_award_truncates_long_notes(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)

        await service.award("user_note", 10, note="x" * 900)

        rows = await _transactions(session, "user_note")
        assert len(rows[0].note) == 500


@pytest.mark.asyncio
async def test_redeem_clamps_to_available_balance(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)
        await service.award("user_clamp", 300)

        result = await service.redeem("user_clamp", 1_000, order_id="ord_9")

        assert result.changed is True
        assert result.redeemed_points == 300
        assert result.requested_points == 1_000
        assert result.snapshot.points_balance == 0
        assert result.snapshot.lifetime_redeemed == 300
        assert result.is_partial is True
        assert result.as_partial() == PartialRedemption(requested=1_000, redeemed=300)
        assert result.as_partial().shortfall == 700

        rows = await _transactions(session, "user_clamp")
        assert [row.delta for row in rows] == [300, -300]


@pytest.mark.asyncio
async def test_full_redemption_is_not_partial(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)
        await service.award("user_full", 500)

        result = await service.redeem("user_full", 200, source=LoyaltyTransactionSource.MANUAL)

        assert result.redeemed_points == 200
        assert result.snapshot.points_balance == 300
        assert result.is_partial is False
        assert result.as_partial() is None
        rows = await _transactions(session, "user_full")
        assert rows[-1].source == "manual"


@pytest.mark.asyncio
async def test_redeem_in_whole_increments_rounds_clamped_amount(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)
        await service.award("user_steps", 237)

        result = await service.redeem("user_steps", 300, whole_increments=True)

        assert result.redeemed_points == 200
        assert result.snapshot.points_balance == 37
        assert result.is_partial is True

        leftover = await service.redeem("user_steps", 100, whole_increments=True)

        assert leftover.changed is False
        assert leftover.snapshot.points_balance == 37
        rows = await _transactions(session, "user_steps")
        assert [row.delta for row in rows] == [237, -200]


@pytest.mark.asyncio
async def test_redeem_empty_balance_is_noop(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)

        missing = await service.redeem("user_empty", 0)
        assert missing.changed is False
        assert missing.redeemed_points == 0
        assert await _wallet_count(session) == 0

        result = await service.redeem("user_empty", 100)

        assert result.changed is False
        assert result.redeemed_points == 0
        assert result.snapshot.points_balance == 0
        assert await _transactions(session, "user_empty") == []


@pytest.mark.asyncio
async def test_signup_award_then_over_redemption_scenario(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)

        awarded = await service.award("user_scenario", 500, reason=LoyaltyReason.SIGNUP)
        assert (
            awarded.snapshot.points_balance,
            awarded.snapshot.lifetime_earned,
            awarded.snapshot.lifetime_redeemed,
        ) == (500, 500, 0)

        redeemed = await service.redeem("user_scenario", 1_000)
        assert redeemed.redeemed_points == 500
        assert (
            redeemed.snapshot.points_balance,
            redeemed.snapshot.lifetime_earned,
            redeemed.snapshot.lifetime_redeemed,
        ) == (0, 500, 500)

        again = await service.redeem("user_scenario", 100)
        assert again.changed is False
        assert again.redeemed_points == 0

        rows = await _transactions(session, "user_scenario")
        assert sum(row.delta for row in rows) == redeemed.snapshot.lifetime_earned - redeemed.snapshot.lifetime_redeemed

    telemetry = get_loyalty_telemetry().snapshot().as_dict()
    assert telemetry["awards"]["total"] == 1
    assert telemetry["redemptions"]["total"] == 1
    assert telemetry["redemptions"]["partial"] == 1
    assert telemetry["redemptions"]["noop"] == 1
    assert telemetry["points"] == {"awarded": 500, "redeemed": 500}


@pytest.mark.asyncio
async def test_redeem_rereads_balance_after_losing_race(file_session_factory, monkeypatch) -> None:
    async with file_session_factory() as session:
        await LoyaltyLedgerService(session).award("user_race", 300)

    competing_results = []

    async with file_session_factory() as session_a:
        service_a = LoyaltyLedgerService(session_a)
        load_wallet = service_a._ensure_wallet_row

        async def _load_then_lose_race(customer_id, *, for_update=False):
            wallet = await load_wallet(customer_id, for_update=for_update)
            async with file_session_factory() as session_b:
                competing_results.append(await LoyaltyLedgerService(session_b).redeem(customer_id, 300))
            return wallet

        monkeypatch.setattr(service_a, "_ensure_wallet_row", _load_then_lose_race)
        losing = await service_a.redeem("user_race", 300)

    assert competing_results[0].redeemed_points == 300
    assert losing.changed is False
    assert losing.redeemed_points == 0
    assert competing_results[0].redeemed_points + losing.redeemed_points == 300

    async with file_session_factory() as session:
        snapshot = await LoyaltyLedgerService(session).get_snapshot("user_race")
        rows = await _transactions(session, "user_race")

    assert snapshot.points_balance == 0
    assert snapshot.lifetime_redeemed == 300
    assert [row.delta for row in rows if row.delta < 0] == [-300]
    assert get_loyalty_telemetry().snapshot().redemptions["conflicts"] == 1


@pytest.mark.asyncio
async def test_ensure_wallet_creates_once(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)

        first = await service.ensure_wallet("user_ensure")
        second = await service.ensure_wallet("user_ensure")

        assert first.wallet_id
        assert first.wallet_id == second.wallet_id
        assert second.points_balance == 0
        assert await _wallet_count(session) == 1

        with pytest.raises(ValueError):
            await service.ensure_wallet("")


@pytest.mark.asyncio
async def test_adjust_updates_lifetime_counters(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)

        credited = await service.adjust("user_adjust", 400, note="goodwill")
        debited = await service.adjust("user_adjust", -150)

        assert credited.points_balance == 400
        assert debited.points_balance == 250
        assert debited.lifetime_earned == 400
        assert debited.lifetime_redeemed == 150

        rows = await _transactions(session, "user_adjust")
        assert [row.delta for row in rows] == [400, -150]
        assert {row.reason for row in rows} == {LoyaltyReason.ADJUSTMENT}
        assert {row.source for row in rows} == {"admin"}


@pytest.mark.asyncio
async def test_adjust_rejects_overdraw_and_invalid_amounts(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)
        await service.award("user_strict", 100)

        with pytest.raises(InsufficientBalanceError) as excinfo:
            await service.adjust("user_strict", -101)
        assert excinfo.value.balance == 100
        assert excinfo.value.delta == -101

        for invalid in (0, 1_000_001, -2_000_000):
            with pytest.raises(ValueError):
                await service.adjust("user_strict", invalid)

        snapshot = await service.get_snapshot("user_strict")
        assert snapshot.points_balance == 100
        assert len(await _transactions(session, "user_strict")) == 1

    assert get_loyalty_telemetry().snapshot().adjustments == {"rejected": 1}


@pytest.mark.asyncio
async def test_award_for_order_uses_earn_rate(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)

        result = await service.award_for_order(
            "user_order",
            amount_cents=4_995,
            currency="usd",
            order_id="ord_42",
        )
        unknown = await service.award_for_order(
            "user_order",
            amount_cents=10_000,
            currency="EUR",
            order_id="ord_43",
        )

        assert result.changed is True
        assert result.snapshot.points_balance == 500
        assert unknown.changed is False

        rows = await _transactions(session, "user_order")
        assert len(rows) == 1
        assert rows[0].source == "checkout"
        assert rows[0].reason == LoyaltyReason.PURCHASE


@pytest.mark.asyncio
async def test_history_rewinds_balance_and_paginates(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyLedgerService(session)
        await service.award("user_history", 1_000)
        await service.redeem("user_history", 300)
        await service.award("user_history", 50)
        await service.adjust("user_history", -50)

        first_page = await service.list_history("user_history", limit=2)

        assert first_page.balance == 700
        assert [entry.points_delta for entry in first_page.entries] == [-50, 50]
        assert [entry.balance_after for entry in first_page.entries] == [700, 750]
        assert [entry.type for entry in first_page.entries] == ["redeem", "earn"]
        assert first_page.next_cursor is not None

        second_page = await service.list_history("user_history", limit=2, cursor=first_page.next_cursor)

        assert [entry.points_delta for entry in second_page.entries] == [-300, 1_000]
        assert [entry.balance_after for entry in second_page.entries] == [700, 1_000]
        assert second_page.next_cursor is None

        empty = await service.list_history("user_nobody")
        assert empty.balance == 0
        assert empty.entries == []
