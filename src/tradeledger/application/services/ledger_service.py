# src/tradeledger/application/services/ledger_service.py
"""
AccountLedger: the only writer of account balances.

Every mutation runs as one read-modify-write function inside
`run_in_transaction`, so the balance change and the record change it belongs
to commit together or not at all. Concurrent commits on the same account are
detected through the version counters and the whole function is re-run.
Subscribers of the change feed are notified strictly after commit.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, TypeVar
from uuid import uuid4

from prometheus_client import Counter
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.attributes import flag_modified

from tradeledger.config import settings
from tradeledger.domain.entities import (
    UserAccount as UserAccountEntity,
    Trade as TradeEntity,
    Cashflow as CashflowEntity,
    LedgerSnapshot,
    TradeKind,
    TradeSide,
    TradeStatus,
)
from tradeledger.domain.errors import (
    AlreadyOnboarded, InsufficientBalance, InvalidInput, LedgerError, NotFound,
)
from tradeledger.domain.value_objects import (
    MONEY_PLACES, Multipliers, RiskLimits, Symbol, ZERO,
    as_decimal, as_utc, month_key, to_decimal, to_money, zone_from_name,
)
from tradeledger.infrastructure.db.models import UserAccount, Trade, Cashflow
from tradeledger.infrastructure.db.repository import AccountRepository, TradeRepository, CashflowRepository
from tradeledger.infrastructure.db.uow import run_in_transaction, session_scope
from tradeledger.infrastructure.feed import ChangeFeed, FeedQuery, Topic
from .risk_service import RiskService

log = logging.getLogger(__name__)

T = TypeVar("T")

LEDGER_OPS = Counter(
    "tl_ledger_operations_total",
    "Account ledger operations by outcome",
    ["operation", "outcome"],
)

_AMOUNT_FIELDS = ("risk_amount", "risk_pct", "fees", "size_usd")
_EDITABLE_FIELDS = frozenset(
    _AMOUNT_FIELDS
    + ("symbol", "side", "kind", "status", "leverage", "notes", "pnl", "open_at", "closed_at")
)
_PREFERENCES = frozenset(("risk_limits", "multipliers", "time_zone"))

# Scale of the non-money numeric columns
_PLACES = {"risk_pct": 4, "leverage": 2}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------
# Input parsing (runs before any write)
# ---------------------------
def _parse_kind(raw: Any) -> TradeKind:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return TradeKind.NORMAL
    if isinstance(raw, TradeKind):
        return raw
    try:
        return TradeKind(str(raw).strip().lower())
    except ValueError:
        raise InvalidInput(f"Invalid kind '{raw}'. Must be 'short', 'normal' or 'long'.")


def _parse_status(raw: Any) -> TradeStatus:
    if isinstance(raw, TradeStatus):
        return raw
    try:
        return TradeStatus(str(raw).strip().lower())
    except ValueError:
        raise InvalidInput(f"Invalid status '{raw}'. Must be 'open' or 'closed'.")


def _non_negative(value: Any, field: str) -> Decimal:
    d = to_decimal(value, field, default=ZERO)
    if d < 0:
        raise InvalidInput(f"{field} must not be negative")
    return to_money(d, _PLACES.get(field, MONEY_PLACES))


def _optional_leverage(value: Any) -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return _non_negative(value, "leverage")


def _parse_timestamp(value: Any, field: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError:
            raise InvalidInput(f"{field} must be an ISO timestamp, got {value!r}")
    if not isinstance(value, datetime):
        raise InvalidInput(f"{field} must be a timestamp")
    return as_utc(value)


def _parse_currency(raw: Optional[str]) -> str:
    value = (raw or settings.DEFAULT_CURRENCY).strip().upper()
    if not value or len(value) > 8 or not value.isalnum():
        raise InvalidInput(f"Invalid currency '{raw}'")
    return value


def _clean_notes(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _r_multiple(pnl: Decimal, risk_amount: Any) -> Decimal:
    risk = as_decimal(risk_amount)
    return to_money(pnl / risk) if risk > 0 else ZERO


# ---------------------------
# Row helpers (run inside the transaction)
# ---------------------------
def _require_account(accounts: AccountRepository, user_id: str) -> UserAccount:
    row = accounts.find_for_update(user_id)
    if row is None:
        raise NotFound("account", user_id)
    return row


def _set_balance(row: UserAccount, value: Decimal) -> None:
    row.current_balance = to_money(value)
    # Force the UPDATE (and the version bump) even when the value is unchanged.
    flag_modified(row, "current_balance")


class AccountLedger:
    """
    Transactional bookkeeping of one balance per user.

    All public methods are coroutines. Each mutation validates its input,
    runs inside a single transaction and publishes the touched topics to
    `self.feed` once committed.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        feed: Optional[ChangeFeed] = None,
        risk_service: Optional[RiskService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.feed = feed if feed is not None else ChangeFeed(self.load_snapshot)
        self.risk = risk_service or RiskService()
        self.clock = clock or _utcnow
        self.max_attempts = max_attempts

    def _now(self) -> datetime:
        return as_utc(self.clock())

    async def _mutate(
        self,
        operation: str,
        user_id: str,
        fn: Callable[[Session], Tuple[T, Iterable[Topic]]],
    ) -> T:
        try:
            result, topics = run_in_transaction(fn, self.session_factory, self.max_attempts)
        except LedgerError as e:
            LEDGER_OPS.labels(operation, e.__class__.__name__).inc()
            raise
        except Exception:
            LEDGER_OPS.labels(operation, "error").inc()
            raise
        LEDGER_OPS.labels(operation, "ok").inc()
        topics = list(topics)
        if topics:
            await self.feed.publish(user_id, topics)
        return result

    def _read(self, fn: Callable[[Session], T]) -> T:
        with session_scope(self.session_factory) as session:
            return fn(session)

    # ---------------------------
    # Account
    # ---------------------------
    async def ensure_account(self, user_id: str, email: Optional[str] = None) -> UserAccountEntity:
        """Create the account on first authentication; returns the stored one otherwise."""
        if not user_id or not str(user_id).strip():
            raise InvalidInput("user_id is required")

        def fn(session: Session):
            accounts = AccountRepository(session)
            row = accounts.find(user_id)
            if row is not None:
                if email and not row.email:
                    row.email = email
                return accounts.to_entity(row), ()
            now = self._now()
            row = accounts.add(UserAccount(
                user_id=user_id,
                email=email,
                currency=settings.DEFAULT_CURRENCY,
                starting_balance=None,
                current_balance=None,
                monthly_expenses={},
                created_at=now,
                updated_at=now,
            ))
            log.info(f"Account created for user {user_id}")
            return accounts.to_entity(row), (Topic.ACCOUNT,)

        try:
            return await self._mutate("ensure_account", user_id, fn)
        except IntegrityError:
            # Lost a creation race; the other transaction's row is the account.
            log.info(f"Account for user {user_id} was created concurrently")
            return await self.get_account(user_id)

    async def save_onboarding(self, user_id: str, starting_balance: Any, currency: Optional[str] = None) -> UserAccountEntity:
        balance = to_money(to_decimal(starting_balance, "starting_balance"))
        if balance < 0:
            raise InvalidInput("starting_balance must not be negative")
        cur = _parse_currency(currency)

        def fn(session: Session):
            accounts = AccountRepository(session)
            row = _require_account(accounts, user_id)
            if row.starting_balance is not None:
                raise AlreadyOnboarded(f"Account {user_id} is already onboarded")
            row.starting_balance = balance
            _set_balance(row, balance)
            row.currency = cur
            session.flush()
            log.info(f"Onboarding saved for user {user_id}: {balance} {cur}")
            return accounts.to_entity(row), (Topic.ACCOUNT,)

        return await self._mutate("save_onboarding", user_id, fn)

    async def reset_account(self, user_id: str, new_starting_balance: Any, currency: Optional[str] = None) -> UserAccountEntity:
        """Wipe every trade and cashflow and start over from a new balance."""
        balance = to_money(to_decimal(new_starting_balance, "new_starting_balance"))
        if balance < 0:
            raise InvalidInput("new_starting_balance must not be negative")

        def fn(session: Session):
            accounts = AccountRepository(session)
            row = _require_account(accounts, user_id)
            trades = TradeRepository(session).delete_all_for_user(user_id)
            cashflows = CashflowRepository(session).delete_all_for_user(user_id)
            row.starting_balance = balance
            _set_balance(row, balance)
            row.currency = _parse_currency(currency or row.currency)
            session.flush()
            log.warning(
                f"Account {user_id} reset to {balance}: removed {trades} trades and {cashflows} cashflows"
            )
            return accounts.to_entity(row), (Topic.ACCOUNT, Topic.TRADES, Topic.CASHFLOWS)

        return await self._mutate("reset_account", user_id, fn)

    async def add_month_expense(self, user_id: str, year: int, month: int, delta: Any) -> UserAccountEntity:
        key = month_key(year, month)
        amount = to_money(to_decimal(delta, "delta"))

        def fn(session: Session):
            accounts = AccountRepository(session)
            row = _require_account(accounts, user_id)
            expenses = accounts.expenses_of(row)
            expenses[key] = max(ZERO, expenses.get(key, ZERO) + amount)
            # A new mapping object so the JSON column is seen as changed.
            row.monthly_expenses = {k: str(v) for k, v in expenses.items()}
            session.flush()
            log.info(f"Expenses of {user_id} for {key} are now {expenses[key]}")
            return accounts.to_entity(row), (Topic.ACCOUNT,)

        return await self._mutate("add_month_expense", user_id, fn)

    async def update_preferences(
        self,
        user_id: str,
        risk_limits: Optional[Mapping[str, Any]] = None,
        multipliers: Optional[Mapping[str, Any]] = None,
        time_zone: Optional[str] = None,
        clear: Iterable[str] = (),
    ) -> UserAccountEntity:
        """
        Set the account's own risk limits, sizing multipliers and time zone.

        Limits and multipliers are partial: the given keys are merged over the
        account's current values (or the configured defaults). Names listed
        in `clear` go back to the defaults.
        """
        clear = set(clear)
        unknown = clear - _PREFERENCES
        if unknown:
            raise InvalidInput(f"Unknown preferences: {', '.join(sorted(unknown))}")
        # Validate before any write; the merge below cannot fail after this.
        if risk_limits:
            RiskLimits().merged(risk_limits)
        if multipliers:
            Multipliers().merged(multipliers)
        zone_name = None
        if time_zone is not None:
            zone_from_name(time_zone)
            zone_name = time_zone.strip()

        def fn(session: Session):
            accounts = AccountRepository(session)
            row = _require_account(accounts, user_id)
            current = accounts.to_entity(row)
            if "risk_limits" in clear:
                row.risk_limits = None
            if "multipliers" in clear:
                row.multipliers = None
            if "time_zone" in clear:
                row.time_zone = None
            if risk_limits:
                base = None if "risk_limits" in clear else current.risk_limits
                row.risk_limits = (base or self.risk.limits).merged(risk_limits).to_dict()
            if multipliers:
                base = None if "multipliers" in clear else current.multipliers
                row.multipliers = (base or self.risk.multipliers).merged(multipliers).to_dict()
            if zone_name is not None:
                row.time_zone = zone_name
            session.flush()
            log.info(f"Preferences of {user_id} updated")
            return accounts.to_entity(row), (Topic.ACCOUNT,)

        return await self._mutate("update_preferences", user_id, fn)

    # ---------------------------
    # Trades
    # ---------------------------
    async def open_trade(self, user_id: str, draft: Mapping[str, Any]) -> TradeEntity:
        """Journal a new open trade. Opening never moves the balance."""
        symbol = Symbol(draft.get("symbol") or "").value
        side = TradeSide.parse(draft.get("side"))
        kind = _parse_kind(draft.get("kind"))
        amounts = {f: _non_negative(draft.get(f), f) for f in _AMOUNT_FIELDS}
        leverage = _optional_leverage(draft.get("leverage"))
        notes = _clean_notes(draft.get("notes"))
        trade_id = uuid4().hex

        def fn(session: Session):
            accounts = AccountRepository(session)
            account = _require_account(accounts, user_id)
            balance = as_decimal(account.current_balance)
            sizing = self.risk.for_account(accounts.to_entity(account)).size_trade(balance, kind, amounts["size_usd"])
            row = TradeRepository(session).add(Trade(
                id=trade_id,
                user_id=user_id,
                symbol=symbol,
                side=side,
                kind=kind,
                status=TradeStatus.OPEN,
                leverage=leverage,
                balance_before=balance,
                recommended_size=to_money(sizing.recommended),
                oversized=sizing.oversized,
                open_at=self._now(),
                closed_at=None,
                pnl=None,
                r=None,
                notes=notes,
                **amounts,
            ))
            if sizing.oversized:
                log.warning(f"Trade {trade_id} of {user_id} is oversized: {sizing.size} > {sizing.recommended}")
            log.info(f"Trade {trade_id} opened for {user_id}: {symbol} ({kind.value})")
            return TradeRepository.to_entity(row), (Topic.TRADES,)

        return await self._mutate("open_trade", user_id, fn)

    async def close_trade(self, user_id: str, trade_id: str, gross_pnl: Any) -> TradeEntity:
        """
        Close an open trade. `gross_pnl` is before fees; the stored pnl is net.
        Closing an already closed trade changes nothing and returns it as stored.
        """
        gross = to_money(to_decimal(gross_pnl, "gross_pnl"))

        def fn(session: Session):
            accounts = AccountRepository(session)
            trades = TradeRepository(session)
            account = _require_account(accounts, user_id)
            row = trades.find(user_id, trade_id)
            if row is None:
                raise NotFound("trade", trade_id)
            if row.status == TradeStatus.CLOSED:
                log.info(f"Trade {trade_id} of {user_id} already closed; skipping")
                return trades.to_entity(row), ()

            net = gross - as_decimal(row.fees)
            row.pnl = net
            row.r = _r_multiple(net, row.risk_amount)
            row.status = TradeStatus.CLOSED
            row.closed_at = self._now()
            _set_balance(account, as_decimal(account.current_balance) + net)
            session.flush()
            log.info(f"Trade {trade_id} of {user_id} closed with net pnl {net}")
            return trades.to_entity(row), (Topic.TRADES, Topic.ACCOUNT)

        return await self._mutate("close_trade", user_id, fn)

    def _parse_changes(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise InvalidInput(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        parsed: Dict[str, Any] = {}
        for name, value in changes.items():
            if name == "symbol":
                parsed[name] = Symbol(value or "").value
            elif name == "side":
                parsed[name] = TradeSide.parse(value)
            elif name == "kind":
                parsed[name] = _parse_kind(value)
            elif name == "status":
                parsed[name] = _parse_status(value)
            elif name in _AMOUNT_FIELDS:
                parsed[name] = _non_negative(value, name)
            elif name == "leverage":
                parsed[name] = _optional_leverage(value)
            elif name == "notes":
                parsed[name] = _clean_notes(value)
            elif name == "pnl":
                parsed[name] = None if value is None else to_money(to_decimal(value, "pnl"))
            elif name == "open_at":
                ts = _parse_timestamp(value, name)
                if ts is None:
                    raise InvalidInput("open_at cannot be cleared")
                parsed[name] = ts
            elif name == "closed_at":
                parsed[name] = _parse_timestamp(value, name)
        return parsed

    async def edit_trade(self, user_id: str, trade_id: str, changes: Mapping[str, Any]) -> TradeEntity:
        """
        Merge `changes` over the stored trade and move the balance by the pnl
        difference between the two states:

            closed -> closed   next.pnl - prev.pnl
            open   -> closed   next.pnl   (pnl required, closed_at defaults to now)
            closed -> open     -prev.pnl  (pnl, closed_at and r are cleared)
            open   -> open     0

        `pnl` here is the net figure as stored, not a gross amount.
        """
        parsed = self._parse_changes(changes)

        def fn(session: Session):
            accounts = AccountRepository(session)
            trades = TradeRepository(session)
            account = _require_account(accounts, user_id)
            row = trades.find(user_id, trade_id)
            if row is None:
                raise NotFound("trade", trade_id)

            was_closed = row.status == TradeStatus.CLOSED
            prev_pnl = as_decimal(row.pnl) if was_closed else ZERO
            next_status = parsed.get("status", row.status)

            for name in ("symbol", "side", "kind", "leverage", "notes", "open_at") + _AMOUNT_FIELDS:
                if name in parsed:
                    setattr(row, name, parsed[name])
            if "size_usd" in parsed or "kind" in parsed:
                risk = self.risk.for_account(accounts.to_entity(account))
                sizing = risk.size_trade(row.balance_before, row.kind, row.size_usd)
                row.recommended_size = to_money(sizing.recommended)
                row.oversized = sizing.oversized

            if next_status == TradeStatus.CLOSED:
                if was_closed:
                    next_pnl = parsed.get("pnl")
                    if next_pnl is None:
                        next_pnl = prev_pnl
                    closed_at = parsed.get("closed_at") or as_utc(row.closed_at or self._now())
                else:
                    next_pnl = parsed.get("pnl")
                    if next_pnl is None:
                        raise InvalidInput("pnl is required to close a trade")
                    closed_at = parsed.get("closed_at") or self._now()
                delta = next_pnl - prev_pnl
                row.pnl = next_pnl
                row.r = _r_multiple(next_pnl, row.risk_amount)
                row.closed_at = closed_at
            else:
                delta = -prev_pnl
                row.pnl = None
                row.r = None
                row.closed_at = None
            row.status = next_status

            topics = [Topic.TRADES]
            if was_closed or next_status == TradeStatus.CLOSED:
                _set_balance(account, as_decimal(account.current_balance) + delta)
                topics.append(Topic.ACCOUNT)
            session.flush()
            log.info(f"Trade {trade_id} of {user_id} edited; balance delta {delta}")
            return trades.to_entity(row), topics

        return await self._mutate("edit_trade", user_id, fn)

    async def delete_trade(self, user_id: str, trade_id: str, missing_ok: bool = True) -> bool:
        """Remove a trade, reversing its pnl if it was closed. Returns False when it did not exist."""

        def fn(session: Session):
            accounts = AccountRepository(session)
            trades = TradeRepository(session)
            account = _require_account(accounts, user_id)
            row = trades.find(user_id, trade_id)
            if row is None:
                if not missing_ok:
                    raise NotFound("trade", trade_id)
                log.info(f"Trade {trade_id} of {user_id} already gone; nothing to delete")
                return False, ()
            topics = [Topic.TRADES]
            if row.status == TradeStatus.CLOSED:
                _set_balance(account, as_decimal(account.current_balance) - as_decimal(row.pnl))
                topics.append(Topic.ACCOUNT)
            trades.delete(row)
            log.info(f"Trade {trade_id} of {user_id} deleted")
            return True, topics

        return await self._mutate("delete_trade", user_id, fn)

    # ---------------------------
    # Cashflows
    # ---------------------------
    async def add_cashflow(self, user_id: str, amount: Any, note: str = "") -> CashflowEntity:
        """Deposit (positive) or withdraw (negative). The balance may never go below zero."""
        value = to_money(to_decimal(amount, "amount"))
        cashflow_id = uuid4().hex

        def fn(session: Session):
            accounts = AccountRepository(session)
            account = _require_account(accounts, user_id)
            balance = as_decimal(account.current_balance)
            next_balance = balance + value
            if next_balance < 0:
                raise InsufficientBalance(balance, next_balance)
            row = CashflowRepository(session).add(Cashflow(
                id=cashflow_id,
                user_id=user_id,
                amount=value,
                note=(note or "").strip(),
                ts=self._now(),
            ))
            _set_balance(account, next_balance)
            session.flush()
            log.info(f"Cashflow {cashflow_id} of {value} recorded for {user_id}")
            return CashflowRepository.to_entity(row), (Topic.CASHFLOWS, Topic.ACCOUNT)

        return await self._mutate("add_cashflow", user_id, fn)

    async def delete_cashflow(self, user_id: str, cashflow_id: str, missing_ok: bool = True) -> bool:
        """Undo a cashflow; refused when reversing it would make the balance negative."""

        def fn(session: Session):
            accounts = AccountRepository(session)
            cashflows = CashflowRepository(session)
            account = _require_account(accounts, user_id)
            row = cashflows.find(user_id, cashflow_id)
            if row is None:
                if not missing_ok:
                    raise NotFound("cashflow", cashflow_id)
                log.info(f"Cashflow {cashflow_id} of {user_id} already gone; nothing to delete")
                return False, ()
            balance = as_decimal(account.current_balance)
            next_balance = balance - as_decimal(row.amount)
            if next_balance < 0:
                raise InsufficientBalance(balance, next_balance)
            cashflows.delete(row)
            _set_balance(account, next_balance)
            session.flush()
            log.info(f"Cashflow {cashflow_id} of {user_id} deleted")
            return True, (Topic.CASHFLOWS, Topic.ACCOUNT)

        return await self._mutate("delete_cashflow", user_id, fn)

    # ---------------------------
    # Reads
    # ---------------------------
    def _account_entity(self, session: Session, user_id: str) -> UserAccountEntity:
        row = AccountRepository(session).find(user_id)
        if row is None:
            raise NotFound("account", user_id)
        return AccountRepository.to_entity(row)

    def _trade_entities(
        self,
        session: Session,
        user_id: str,
        opened_from: Optional[datetime] = None,
        opened_to: Optional[datetime] = None,
    ) -> List[TradeEntity]:
        rows = TradeRepository(session).list_for_user(
            user_id,
            opened_from=None if opened_from is None else as_utc(opened_from),
            opened_to=None if opened_to is None else as_utc(opened_to),
        )
        return [TradeRepository.to_entity(r) for r in rows]

    def _cashflow_entities(self, session: Session, user_id: str) -> List[CashflowEntity]:
        return [CashflowRepository.to_entity(r) for r in CashflowRepository(session).list_for_user(user_id)]

    async def get_account(self, user_id: str) -> UserAccountEntity:
        return self._read(lambda s: self._account_entity(s, user_id))

    async def list_trades(
        self,
        user_id: str,
        opened_from: Optional[datetime] = None,
        opened_to: Optional[datetime] = None,
    ) -> List[TradeEntity]:
        """Trades newest first, optionally restricted to an open_at range (inclusive)."""
        return self._read(lambda s: self._trade_entities(s, user_id, opened_from, opened_to))

    async def list_cashflows(self, user_id: str) -> List[CashflowEntity]:
        return self._read(lambda s: self._cashflow_entities(s, user_id))

    async def snapshot(self, user_id: str) -> LedgerSnapshot:
        """Account, trades and cashflows read in one session."""
        def fn(session: Session) -> LedgerSnapshot:
            return LedgerSnapshot(
                account=self._account_entity(session, user_id),
                trades=self._trade_entities(session, user_id),
                cashflows=self._cashflow_entities(session, user_id),
            )
        return self._read(fn)

    def load_snapshot(self, user_id: str, query: FeedQuery) -> Any:
        """Snapshot loader of the change feed; a missing account reads as None."""
        def fn(session: Session) -> Any:
            if query.topic == Topic.ACCOUNT:
                row = AccountRepository(session).find(user_id)
                return None if row is None else AccountRepository.to_entity(row)
            if query.topic == Topic.TRADES:
                return self._trade_entities(session, user_id, query.opened_from, query.opened_to)
            return self._cashflow_entities(session, user_id)
        return self._read(fn)
