import pytest
from decimal import Decimal

from tradeledger.application.services.ledger_service import AccountLedger
from tradeledger.domain.entities import TradeStatus, TradeKind, TradeSide
from tradeledger.domain.errors import (
    AlreadyOnboarded, InsufficientBalance, InvalidInput, NotFound, TransactionConflict,
)
from tradeledger.infrastructure.db.models import UserAccount
from tradeledger.infrastructure.db.uow import session_scope
from tradeledger.infrastructure.feed import FeedQuery, Topic

from conftest import NOW


async def balance_of(ledger: AccountLedger, user_id: str = "u1") -> Decimal:
    return (await ledger.get_account(user_id)).current_balance


async def assert_balance_invariant(ledger: AccountLedger, user_id: str = "u1"):
    snap = await ledger.snapshot(user_id)
    expected = (
        snap.account.starting_balance
        + sum((t.pnl for t in snap.trades if t.is_closed), Decimal("0"))
        + sum((c.amount for c in snap.cashflows), Decimal("0"))
    )
    assert snap.account.current_balance == expected

# --- Account ---

@pytest.mark.asyncio
async def test_ensure_account_creates_once(ledger: AccountLedger):
    first = await ledger.ensure_account("u1", email="a@b.c")
    second = await ledger.ensure_account("u1")
    assert first.user_id == second.user_id == "u1"
    assert second.email == "a@b.c"
    assert second.currency == "EUR"
    assert second.current_balance is None
    assert not second.is_onboarded
    assert second.created_at == first.created_at == NOW

@pytest.mark.asyncio
async def test_onboarding_sets_both_balances(ledger: AccountLedger, onboard):
    account = await onboard(balance="1000", currency="usd")
    assert account.starting_balance == Decimal("1000")
    assert account.current_balance == Decimal("1000")
    assert account.currency == "USD"
    assert account.is_onboarded

@pytest.mark.asyncio
async def test_onboarding_twice_is_rejected(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    with pytest.raises(AlreadyOnboarded):
        await ledger.save_onboarding("u1", "5000")
    assert await balance_of(ledger) == Decimal("1000")

@pytest.mark.asyncio
@pytest.mark.parametrize("value", ["-1", "NaN", "Infinity", "abc", None])
async def test_onboarding_rejects_bad_balances(ledger: AccountLedger, value):
    await ledger.ensure_account("u1")
    with pytest.raises(InvalidInput):
        await ledger.save_onboarding("u1", value)
    assert not (await ledger.get_account("u1")).is_onboarded

@pytest.mark.asyncio
async def test_mutations_require_an_account(ledger: AccountLedger):
    with pytest.raises(NotFound):
        await ledger.add_cashflow("ghost", "100")
    with pytest.raises(NotFound):
        await ledger.open_trade("ghost", {"symbol": "BTCUSDT"})
    with pytest.raises(NotFound):
        await ledger.get_account("ghost")

@pytest.mark.asyncio
async def test_month_expense_accumulates_and_floors_at_zero(ledger: AccountLedger, onboard):
    await onboard()
    account = await ledger.add_month_expense("u1", 2026, 10, "120")
    assert account.expenses_for("2026-10") == Decimal("120")
    account = await ledger.add_month_expense("u1", 2026, 10, "-200")
    assert account.expenses_for("2026-10") == Decimal("0")
    await ledger.add_month_expense("u1", 2026, 10, "50.5")
    await ledger.add_month_expense("u1", 2026, 11, "10")
    account = await ledger.get_account("u1")
    assert account.monthly_expenses == {"2026-10": Decimal("50.5"), "2026-11": Decimal("10")}
    assert account.current_balance == Decimal("1000")

@pytest.mark.asyncio
async def test_month_expense_rejects_bad_month(ledger: AccountLedger, onboard):
    await onboard()
    with pytest.raises(InvalidInput):
        await ledger.add_month_expense("u1", 2026, 13, "10")

@pytest.mark.asyncio
async def test_reset_account_wipes_history(ledger: AccountLedger, onboard):
    await onboard()
    trade = await ledger.open_trade("u1", {"symbol": "ETHUSDT"})
    await ledger.close_trade("u1", trade.id, "200")
    await ledger.add_cashflow("u1", "300")
    await ledger.add_month_expense("u1", 2026, 10, "40")

    account = await ledger.reset_account("u1", "500")

    assert account.starting_balance == Decimal("500")
    assert account.current_balance == Decimal("500")
    assert account.expenses_for("2026-10") == Decimal("40")
    assert await ledger.list_trades("u1") == []
    assert await ledger.list_cashflows("u1") == []
    await assert_balance_invariant(ledger)

# --- Trades ---

@pytest.mark.asyncio
async def test_open_trade_snapshots_balance_and_sizing(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    trade = await ledger.open_trade("u1", {
        "symbol": " btcusdt ", "side": "buy", "kind": "normal",
        "risk_amount": "100", "size_usd": "4000", "fees": "10",
    })
    assert trade.symbol == "BTCUSDT"
    assert trade.side == TradeSide.LONG
    assert trade.kind == TradeKind.NORMAL
    assert trade.status == TradeStatus.OPEN
    assert trade.open_at == NOW
    assert trade.pnl is None and trade.r is None and trade.closed_at is None
    assert trade.balance_before == Decimal("1000")
    assert trade.recommended_size == Decimal("3000")
    assert trade.oversized is True
    assert len(trade.id) == 32
    assert await balance_of(ledger) == Decimal("1000")

@pytest.mark.asyncio
async def test_open_trade_defaults(ledger: AccountLedger, onboard):
    await onboard()
    trade = await ledger.open_trade("u1", {"symbol": "EUR/USD"})
    assert trade.kind == TradeKind.NORMAL
    assert trade.side is None
    assert trade.fees == Decimal("0")
    assert trade.size_usd == Decimal("0")
    assert trade.oversized is False

@pytest.mark.asyncio
@pytest.mark.parametrize("draft", [
    {"symbol": ""},
    {"symbol": "BTCUSDT", "fees": "NaN"},
    {"symbol": "BTCUSDT", "risk_amount": "-5"},
    {"symbol": "BTCUSDT", "kind": "scalp"},
    {"symbol": "BTCUSDT", "side": "sideways"},
])
async def test_open_trade_rejects_invalid_input(ledger: AccountLedger, onboard, draft):
    await onboard()
    with pytest.raises(InvalidInput):
        await ledger.open_trade("u1", draft)
    assert await ledger.list_trades("u1") == []

@pytest.mark.asyncio
async def test_close_trade_books_net_pnl_and_r(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT", "risk_amount": "100", "fees": "10"})

    closed = await ledger.close_trade("u1", trade.id, "150")

    assert closed.status == TradeStatus.CLOSED
    assert closed.pnl == Decimal("140")
    assert closed.r == Decimal("1.4")
    assert closed.closed_at == NOW
    assert await balance_of(ledger) == Decimal("1140")

@pytest.mark.asyncio
async def test_close_trade_without_risk_has_zero_r(ledger: AccountLedger, onboard):
    await onboard()
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT"})
    closed = await ledger.close_trade("u1", trade.id, "-25")
    assert closed.r == Decimal("0")
    assert await balance_of(ledger) == Decimal("975")

@pytest.mark.asyncio
async def test_close_is_idempotent(ledger: AccountLedger, onboard, clock):
    await onboard(balance="1000")
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT", "fees": "10"})
    await ledger.close_trade("u1", trade.id, "150")
    clock.advance(hours=1)

    again = await ledger.close_trade("u1", trade.id, "999")

    assert again.pnl == Decimal("140")
    assert again.closed_at == NOW
    assert await balance_of(ledger) == Decimal("1140")

@pytest.mark.asyncio
async def test_close_missing_trade_raises(ledger: AccountLedger, onboard):
    await onboard()
    with pytest.raises(NotFound):
        await ledger.close_trade("u1", "nope", "10")

@pytest.mark.asyncio
async def test_delete_closed_trade_reverses_pnl(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT", "risk_amount": "100", "fees": "10"})
    await ledger.close_trade("u1", trade.id, "150")
    assert await balance_of(ledger) == Decimal("1140")

    assert await ledger.delete_trade("u1", trade.id) is True

    assert await balance_of(ledger) == Decimal("1000")
    assert await ledger.list_trades("u1") == []

@pytest.mark.asyncio
async def test_delete_open_trade_keeps_balance(ledger: AccountLedger, onboard):
    await onboard()
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT"})
    assert await ledger.delete_trade("u1", trade.id) is True
    assert await balance_of(ledger) == Decimal("1000")

@pytest.mark.asyncio
async def test_delete_missing_trade(ledger: AccountLedger, onboard):
    await onboard()
    assert await ledger.delete_trade("u1", "nope") is False
    with pytest.raises(NotFound):
        await ledger.delete_trade("u1", "nope", missing_ok=False)

@pytest.mark.asyncio
async def test_trades_of_other_users_are_invisible(ledger: AccountLedger, onboard):
    await onboard("u1")
    await onboard("u2")
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT"})
    with pytest.raises(NotFound):
        await ledger.close_trade("u2", trade.id, "10")
    assert await ledger.list_trades("u2") == []

@pytest.mark.asyncio
async def test_list_trades_newest_first_with_range(ledger: AccountLedger, onboard, clock):
    await onboard()
    ids = []
    for symbol in ("AAA", "BBB", "CCC"):
        ids.append((await ledger.open_trade("u1", {"symbol": symbol})).id)
        clock.advance(hours=1)

    listed = await ledger.list_trades("u1")
    assert [t.id for t in listed] == list(reversed(ids))

    later = await ledger.list_trades("u1", opened_from=NOW.replace(hour=13))
    assert [t.symbol for t in later] == ["CCC", "BBB"]

    window = await ledger.list_trades("u1", opened_from=NOW, opened_to=NOW.replace(hour=13))
    assert [t.symbol for t in window] == ["BBB", "AAA"]

# --- Edits ---

@pytest.mark.asyncio
async def test_edit_open_to_closed_and_back_restores_balance(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT", "risk_amount": "50"})

    closed = await ledger.edit_trade("u1", trade.id, {"status": "closed", "pnl": "75"})
    assert closed.status == TradeStatus.CLOSED
    assert closed.closed_at == NOW
    assert closed.r == Decimal("1.5")
    assert await balance_of(ledger) == Decimal("1075")

    reopened = await ledger.edit_trade("u1", trade.id, {"status": "open"})
    assert reopened.status == TradeStatus.OPEN
    assert reopened.pnl is None and reopened.r is None and reopened.closed_at is None
    assert await balance_of(ledger) == Decimal("1000")

@pytest.mark.asyncio
async def test_edit_closed_trade_applies_difference(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT", "risk_amount": "100", "fees": "10"})
    await ledger.close_trade("u1", trade.id, "150")

    edited = await ledger.edit_trade("u1", trade.id, {"pnl": "100"})

    assert edited.pnl == Decimal("100")
    assert edited.r == Decimal("1")
    assert edited.closed_at == NOW
    assert await balance_of(ledger) == Decimal("1100")
    await assert_balance_invariant(ledger)

@pytest.mark.asyncio
async def test_edit_open_trade_fields_leaves_balance(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT", "size_usd": "4000"})
    assert trade.oversized is True

    edited = await ledger.edit_trade("u1", trade.id, {"kind": "short", "notes": "  breakout  ", "symbol": "ethusdt"})

    assert edited.kind == TradeKind.SHORT
    assert edited.recommended_size == Decimal("6000")
    assert edited.oversized is False
    assert edited.notes == "breakout"
    assert edited.symbol == "ETHUSDT"
    assert await balance_of(ledger) == Decimal("1000")

@pytest.mark.asyncio
async def test_edit_close_requires_pnl(ledger: AccountLedger, onboard):
    await onboard()
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT"})
    with pytest.raises(InvalidInput):
        await ledger.edit_trade("u1", trade.id, {"status": "closed"})
    stored = (await ledger.list_trades("u1"))[0]
    assert stored.status == TradeStatus.OPEN
    assert await balance_of(ledger) == Decimal("1000")

@pytest.mark.asyncio
async def test_edit_rejects_ledger_fields(ledger: AccountLedger, onboard):
    await onboard()
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT"})
    with pytest.raises(InvalidInput):
        await ledger.edit_trade("u1", trade.id, {"balance_before": "1"})
    with pytest.raises(InvalidInput):
        await ledger.edit_trade("u1", trade.id, {"pnl": "NaN", "status": "closed"})

@pytest.mark.asyncio
async def test_edit_missing_trade_raises(ledger: AccountLedger, onboard):
    await onboard()
    with pytest.raises(NotFound):
        await ledger.edit_trade("u1", "nope", {"notes": "x"})

# --- Cashflows ---

@pytest.mark.asyncio
async def test_cashflows_move_balance(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    deposit = await ledger.add_cashflow("u1", "200", note="  top up ")
    await ledger.add_cashflow("u1", "-150")
    assert deposit.note == "top up"
    assert deposit.is_deposit
    assert await balance_of(ledger) == Decimal("1050")

    assert await ledger.delete_cashflow("u1", deposit.id) is True
    assert await balance_of(ledger) == Decimal("850")
    assert [c.amount for c in await ledger.list_cashflows("u1")] == [Decimal("-150")]

@pytest.mark.asyncio
async def test_withdrawal_cannot_overdraw(ledger: AccountLedger, onboard):
    await onboard(balance="50")
    with pytest.raises(InsufficientBalance):
        await ledger.add_cashflow("u1", "-100")
    assert await balance_of(ledger) == Decimal("50")
    assert await ledger.list_cashflows("u1") == []

@pytest.mark.asyncio
async def test_withdrawal_to_exactly_zero_is_allowed(ledger: AccountLedger, onboard):
    await onboard(balance="50")
    await ledger.add_cashflow("u1", "-50")
    assert await balance_of(ledger) == Decimal("0")

@pytest.mark.asyncio
async def test_deleting_a_deposit_cannot_overdraw(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    deposit = await ledger.add_cashflow("u1", "500")
    await ledger.add_cashflow("u1", "-1400")
    assert await balance_of(ledger) == Decimal("100")

    with pytest.raises(InsufficientBalance):
        await ledger.delete_cashflow("u1", deposit.id)

    assert await balance_of(ledger) == Decimal("100")
    assert len(await ledger.list_cashflows("u1")) == 2

@pytest.mark.asyncio
async def test_delete_missing_cashflow(ledger: AccountLedger, onboard):
    await onboard()
    assert await ledger.delete_cashflow("u1", "nope") is False
    with pytest.raises(NotFound):
        await ledger.delete_cashflow("u1", "nope", missing_ok=False)

@pytest.mark.asyncio
async def test_cashflow_rejects_non_numeric(ledger: AccountLedger, onboard):
    await onboard()
    with pytest.raises(InvalidInput):
        await ledger.add_cashflow("u1", "NaN")
    with pytest.raises(InvalidInput):
        await ledger.add_cashflow("u1", True)

@pytest.mark.asyncio
async def test_not_onboarded_account_is_treated_as_empty(ledger: AccountLedger):
    await ledger.ensure_account("u1")
    with pytest.raises(InsufficientBalance):
        await ledger.add_cashflow("u1", "-1")
    await ledger.add_cashflow("u1", "25")
    assert await balance_of(ledger) == Decimal("25")

# --- Invariant over a mixed sequence ---

@pytest.mark.asyncio
async def test_balance_invariant_over_mixed_sequence(ledger: AccountLedger, onboard, clock):
    await onboard(balance="1000")
    a = await ledger.open_trade("u1", {"symbol": "AAA", "fees": "2", "risk_amount": "20"})
    b = await ledger.open_trade("u1", {"symbol": "BBB", "fees": "1"})
    c = await ledger.open_trade("u1", {"symbol": "CCC"})
    await assert_balance_invariant(ledger)

    clock.advance(minutes=5)
    await ledger.close_trade("u1", a.id, "52")
    await ledger.close_trade("u1", b.id, "-30")
    await assert_balance_invariant(ledger)

    dep = await ledger.add_cashflow("u1", "250")
    await ledger.add_cashflow("u1", "-100")
    await ledger.edit_trade("u1", a.id, {"pnl": "10"})
    await ledger.edit_trade("u1", c.id, {"status": "closed", "pnl": "-12.5"})
    await ledger.edit_trade("u1", b.id, {"status": "open"})
    await assert_balance_invariant(ledger)

    await ledger.delete_trade("u1", c.id)
    await ledger.delete_cashflow("u1", dep.id)
    await ledger.close_trade("u1", b.id, "5")
    await assert_balance_invariant(ledger)

    # 1000 + 10 (a) + 4 (b) - 100
    assert await balance_of(ledger) == Decimal("914")

# --- Concurrency ---

@pytest.mark.asyncio
async def test_concurrent_write_is_retried(session_factory, onboard):
    await onboard(balance="1000")
    calls = {"n": 0}

    def racing_clock():
        calls["n"] += 1
        if calls["n"] == 1:
            # Another writer commits between our read and our write.
            with session_scope(session_factory) as s:
                row = s.get(UserAccount, "u1")
                row.current_balance = row.current_balance + Decimal("500")
        return NOW

    racing = AccountLedger(session_factory=session_factory, clock=racing_clock, max_attempts=3)
    await racing.add_cashflow("u1", "100")

    assert calls["n"] == 2
    assert await balance_of(racing) == Decimal("1600")
    assert len(await racing.list_cashflows("u1")) == 1

@pytest.mark.asyncio
async def test_persistent_conflicts_raise_transaction_conflict(session_factory, onboard):
    await onboard(balance="1000")

    def always_racing_clock():
        with session_scope(session_factory) as s:
            row = s.get(UserAccount, "u1")
            row.current_balance = row.current_balance + Decimal("1")
        return NOW

    racing = AccountLedger(session_factory=session_factory, clock=always_racing_clock, max_attempts=2)
    with pytest.raises(TransactionConflict):
        await racing.add_cashflow("u1", "100")

    assert await racing.list_cashflows("u1") == []
    assert await balance_of(racing) == Decimal("1002")

# --- Change feed ---

@pytest.mark.asyncio
async def test_feed_receives_snapshots_after_commit(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    balances = []
    sub = await ledger.feed.subscribe("u1", FeedQuery(Topic.ACCOUNT), lambda acc: balances.append(acc.current_balance))
    trades_seen = []
    await ledger.feed.subscribe("u1", FeedQuery(Topic.TRADES), lambda trades: trades_seen.append(len(trades)))

    await ledger.add_cashflow("u1", "100")
    with pytest.raises(InsufficientBalance):
        await ledger.add_cashflow("u1", "-5000")
    await ledger.open_trade("u1", {"symbol": "BTCUSDT"})

    assert balances == [Decimal("1000"), Decimal("1100")]
    assert trades_seen == [0, 1]

    sub.cancel()
    await ledger.add_cashflow("u1", "1")
    assert balances == [Decimal("1000"), Decimal("1100")]

# --- Stored precision ---

@pytest.mark.asyncio
async def test_returned_trade_matches_stored_trade(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT", "risk_amount": "3", "risk_pct": "0.123456"})
    seen = []
    await ledger.feed.subscribe("u1", FeedQuery(Topic.TRADES), lambda trades: seen.append(trades))

    closed = await ledger.close_trade("u1", trade.id, "100")
    stored = (await ledger.list_trades("u1"))[0]
    assert closed.r == stored.r == Decimal("33.33333333")
    assert closed == stored
    assert seen[-1][0] == stored

    edited = await ledger.edit_trade("u1", trade.id, {"pnl": "10.123456789"})
    stored = (await ledger.list_trades("u1"))[0]
    assert edited == stored
    assert edited.pnl == Decimal("10.12345679")
    assert edited.risk_pct == Decimal("0.1235")
    await assert_balance_invariant(ledger)

@pytest.mark.asyncio
async def test_returned_cashflow_and_balance_match_stored(ledger: AccountLedger, onboard):
    await onboard(balance="0.000000001")
    assert await balance_of(ledger) == 0

    flow = await ledger.add_cashflow("u1", "1.000000004")
    assert flow == (await ledger.list_cashflows("u1"))[0]
    assert flow.amount == Decimal("1.00000000")
    await assert_balance_invariant(ledger)

@pytest.mark.asyncio
async def test_amount_beyond_store_range_is_rejected(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    with pytest.raises(InvalidInput):
        await ledger.add_cashflow("u1", "1e40")
    assert await balance_of(ledger) == Decimal("1000")

# --- Preferences ---

@pytest.mark.asyncio
async def test_update_preferences_merges_over_defaults(ledger: AccountLedger, onboard):
    await onboard()
    account = await ledger.update_preferences(
        "u1", risk_limits={"max_trade_loss_pct": "2"}, multipliers={"normal": "4"}, time_zone="UTC",
    )
    assert account.risk_limits.max_trade_loss_pct == Decimal("2")
    assert account.risk_limits.max_day_loss_pct == Decimal("9")
    assert account.multipliers.normal == Decimal("4")
    assert account.multipliers.short == Decimal("6")
    assert account.time_zone == "UTC"

    again = await ledger.update_preferences("u1", risk_limits={"day_goal_pct": "20"})
    assert again.risk_limits.max_trade_loss_pct == Decimal("2")
    assert again.risk_limits.day_goal_pct == Decimal("20")
    assert again == await ledger.get_account("u1")

@pytest.mark.asyncio
async def test_cleared_preferences_fall_back_to_defaults(ledger: AccountLedger, onboard):
    await onboard()
    await ledger.update_preferences("u1", multipliers={"long": "1"}, time_zone="UTC")
    account = await ledger.update_preferences("u1", clear=["multipliers", "time_zone"])
    assert account.multipliers is None
    assert account.time_zone is None

@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs", [
    {"risk_limits": {"max_trade_loss_pct": "-1"}},
    {"risk_limits": {"max_loss": "5"}},
    {"multipliers": {"normal": "NaN"}},
    {"time_zone": "Mars/Olympus"},
    {"clear": ["balance"]},
])
async def test_update_preferences_rejects_bad_values(ledger: AccountLedger, onboard, kwargs):
    await onboard()
    with pytest.raises(InvalidInput):
        await ledger.update_preferences("u1", **kwargs)
    account = await ledger.get_account("u1")
    assert account.risk_limits is None and account.multipliers is None and account.time_zone is None

@pytest.mark.asyncio
async def test_open_trade_sizes_with_account_multipliers(ledger: AccountLedger, onboard):
    await onboard(balance="1000")
    await ledger.update_preferences("u1", multipliers={"normal": "2"})

    trade = await ledger.open_trade("u1", {"symbol": "BTCUSDT", "size_usd": "2500"})
    assert trade.recommended_size == Decimal("2000")
    assert trade.oversized is True

    edited = await ledger.edit_trade("u1", trade.id, {"kind": "short"})
    assert edited.recommended_size == Decimal("6000")
    assert edited.oversized is False
