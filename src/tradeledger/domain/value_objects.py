# src/tradeledger/domain/value_objects.py
"""
Value objects and numeric helpers for the journal domain.

Money is always `Decimal`. Inputs coming from forms or JSON may be strings,
ints or floats; `to_decimal` converts them strictly (raising `InvalidInput`
for NaN, infinities and garbage) while `as_decimal` is the lenient variant
used on the read side, where a bad stored value must not crash a report.
"""
from __future__ import annotations
from dataclasses import dataclass
import logging
import re
from datetime import datetime, timezone, tzinfo
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidInput

log = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Scale of the store's money columns (NUMERIC(20, 8))
MONEY_PLACES = 8

# Journal symbols are free-form tickers: "BTCUSDT", "EUR/USD", "ES1!", "BRK.B"
_SYMBOL_RE = re.compile(r"^[A-Z0-9][A-Z0-9/\-\.:_!]{0,31}$")


def to_decimal(value: Any, field: str = "value", default: Optional[Decimal] = None) -> Decimal:
    """Strict conversion for write paths.

    `None` and "" yield `default` when one is given; anything that is not a
    finite number raises `InvalidInput`.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is not None:
            return default
        raise InvalidInput(f"{field} is required")
    if isinstance(value, bool):
        raise InvalidInput(f"{field} must be a number, got a boolean")
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value).strip())
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidInput(f"{field} must be a number, got {value!r}")
    if not d.is_finite():
        raise InvalidInput(f"{field} must be finite, got {value!r}")
    return d


def as_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Safely converts stored data to a Decimal."""
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    if value is None:
        return default
    try:
        d = Decimal(str(value))
        return d if d.is_finite() else default
    except (InvalidOperation, TypeError, ValueError):
        log.warning(f"could not convert '{value}' to Decimal.")
        return default


def to_money(value: Decimal, places: int = MONEY_PLACES) -> Decimal:
    """Round to the scale the store keeps, so written and returned values agree."""
    try:
        return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidInput(f"{value} is out of range")


def zone_from_name(name: str) -> tzinfo:
    """IANA zone for `name`; "UTC" does not need the tz database."""
    if not isinstance(name, str) or not name.strip():
        raise InvalidInput("time zone must be a non-empty name")
    name = name.strip()
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise InvalidInput(f"Unknown time zone '{name}'")


def as_utc(ts: datetime) -> datetime:
    """Stores such as SQLite drop tzinfo; naive timestamps are UTC by convention."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def month_key(year: int, month: int) -> str:
    """'YYYY-MM' key of the monthly expense map (month is 1-12)."""
    if not 1 <= int(month) <= 12:
        raise InvalidInput(f"month must be 1-12, got {month}")
    return f"{int(year):04d}-{int(month):02d}"


class Symbol:
    """Represents a trading symbol. Immutable, stripped and always uppercase."""
    def __init__(self, value: str) -> None:
        if not isinstance(value, str) or not value.strip():
            raise InvalidInput("symbol must be a non-empty string.")
        normalized = re.sub(r"\s+", "", value).upper()
        if not _SYMBOL_RE.match(normalized):
            raise InvalidInput(f"Invalid symbol format: '{value}'")
        self.value = normalized

    def __repr__(self) -> str:
        return f"Symbol('{self.value}')"

    def __str__(self) -> str:
        return self.value

    def __eq__(self, other) -> bool:
        return isinstance(other, Symbol) and self.value == other.value

    def __hash__(self) -> int:
        return hash(self.value)


@dataclass(frozen=True)
class Multipliers:
    """Balance multipliers giving the recommended position size per trade kind."""
    short: Decimal = Decimal("6")
    normal: Decimal = Decimal("3")
    long: Decimal = Decimal("1.8")

    FIELDS = ("short", "normal", "long")

    def __post_init__(self) -> None:
        for name in self.FIELDS:
            if getattr(self, name) < 0:
                raise InvalidInput(f"multiplier '{name}' must be non-negative.")

    def for_kind(self, kind: Any) -> Decimal:
        key = str(getattr(kind, "value", kind) or "normal").lower()
        return getattr(self, key, self.normal)

    def to_dict(self) -> Dict[str, str]:
        return {name: str(getattr(self, name)) for name in self.FIELDS}

    def merged(self, changes: Mapping[str, Any]) -> "Multipliers":
        """Copy with `changes` applied; unknown keys and bad numbers raise InvalidInput."""
        return _merge(self, changes)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["Multipliers"]:
        """Stored form back to a value; None or unreadable data means "not set"."""
        return _from_stored(cls, data)


@dataclass(frozen=True)
class RiskLimits:
    """Loss limits and daily goal, as percentages of the current balance."""
    max_trade_loss_pct: Decimal = Decimal("3")
    max_day_loss_pct: Decimal = Decimal("9")
    day_goal_pct: Decimal = Decimal("15")

    FIELDS = ("max_trade_loss_pct", "max_day_loss_pct", "day_goal_pct")

    def __post_init__(self) -> None:
        for name in self.FIELDS:
            if getattr(self, name) < 0:
                raise InvalidInput(f"{name} must be non-negative.")

    def max_trade_loss(self, balance: Decimal) -> Decimal:
        return max(ZERO, balance) * self.max_trade_loss_pct / HUNDRED

    def max_day_loss(self, balance: Decimal) -> Decimal:
        return max(ZERO, balance) * self.max_day_loss_pct / HUNDRED

    def day_goal(self, balance: Decimal) -> Decimal:
        return max(ZERO, balance) * self.day_goal_pct / HUNDRED

    def trade_loss_exceeds(self, pnl: Optional[Decimal], balance: Decimal) -> bool:
        """A single closed trade lost more than the per-trade limit."""
        if pnl is None:
            return False
        return pnl < -self.max_trade_loss(balance)

    def day_loss_exceeds(self, day_pnl: Decimal, balance: Decimal) -> bool:
        return day_pnl < -self.max_day_loss(balance)

    def to_dict(self) -> Dict[str, str]:
        return {name: str(getattr(self, name)) for name in self.FIELDS}

    def merged(self, changes: Mapping[str, Any]) -> "RiskLimits":
        return _merge(self, changes)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["RiskLimits"]:
        return _from_stored(cls, data)


def _merge(value, changes: Mapping[str, Any]):
    unknown = set(changes) - set(value.FIELDS)
    if unknown:
        raise InvalidInput(f"Unknown fields: {', '.join(sorted(unknown))}")
    current = {name: getattr(value, name) for name in value.FIELDS}
    for name, raw in changes.items():
        current[name] = to_decimal(raw, name)
    return type(value)(**current)


def _from_stored(cls, data: Optional[Mapping[str, Any]]):
    if not data:
        return None
    try:
        return cls(**{name: as_decimal(data[name]) for name in cls.FIELDS if name in data})
    except InvalidInput as e:
        log.warning(f"Ignoring stored {cls.__name__}: {e}")
        return None
