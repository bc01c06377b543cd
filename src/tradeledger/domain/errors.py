# src/tradeledger/domain/errors.py
"""
Error taxonomy of the account ledger.

Every ledger operation either commits fully or raises one of these; the
transaction boundary guarantees no partial balance update is left behind.
"""


class LedgerError(Exception):
    """Base class for all ledger errors."""


class NotFound(LedgerError):
    """A referenced account, trade or cashflow does not exist."""

    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} '{ident}' not found")
        self.kind = kind
        self.ident = ident


class InsufficientBalance(LedgerError):
    """Applying the operation would drive the current balance below zero."""

    def __init__(self, balance, attempted):
        super().__init__(f"Balance would become negative ({balance} -> {attempted})")
        self.balance = balance
        self.attempted = attempted


class TransactionConflict(LedgerError):
    """The store kept detecting concurrent writes and gave up retrying."""


class InvalidInput(LedgerError, ValueError):
    """Malformed input rejected before any write was attempted."""


class AlreadyOnboarded(LedgerError):
    """Onboarding was requested for an account whose starting balance is set."""
