"""Shared exception types for the investor core."""

from typing import Any, List, Optional


class InvestorError(RuntimeError):
    """Base class for errors raised by the investor core."""


class StoreMissing(InvestorError):
    """Raised when no portfolio snapshot has been written yet."""

    def __init__(self, path: Any):
        super().__init__(f"Portfolio store file does not exist: {path}")
        self.path = path


class StoreCorrupt(InvestorError):
    """Raised when the portfolio snapshot exists but cannot be decoded."""

    def __init__(self, path: Any, original: Optional[Exception] = None):
        detail = f": {original}" if original else ""
        super().__init__(f"Portfolio store file is unreadable ({path}){detail}")
        self.path = path
        self.original = original


class BidValidationFailed(InvestorError):
    """Raised when a bid produced by the decision engine is malformed."""

    def __init__(self, errors: List[str], bid: Any = None):
        super().__init__("Invalid bid: " + "; ".join(errors))
        self.errors = list(errors)
        self.bid = bid


class LedgerCallFailed(InvestorError):
    """Raised when a ledger call (bid, withdraw, balance, redeem) fails."""

    def __init__(self, operation: str, loan_id: Optional[str] = None, original: Optional[Exception] = None):
        target = f" for loan {loan_id}" if loan_id else ""
        reason = f": {original}" if original else ""
        super().__init__(f"Ledger call '{operation}' failed{target}{reason}")
        self.operation = operation
        self.loan_id = loan_id
        self.original = original


class UnknownInvestment(InvestorError):
    """Raised when an operation names a loan id the portfolio does not track."""

    def __init__(self, loan_id: str):
        super().__init__(f"No investment tracked for loan {loan_id}")
        self.loan_id = loan_id
