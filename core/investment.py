"""
auction-investor Core: Investment Model

Durable record of one bid and its lifecycle state for one loan, plus the
portfolio container the investor and the lifecycle share.

States: AUCTION → REVIEW → (ACCEPTED | REJECTED)

Provides:
- Lifecycle state enum with ledger-value coercion
- Immutable bid record
- Snapshot (de)serialization without the live loan handle
- Per-loan locks for transition handlers
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterator, List, Mapping, Optional
import logging

from core.exceptions import UnknownInvestment

logger = logging.getLogger(__name__)


class InvestmentState(Enum):
    """Investment lifecycle states"""
    AUCTION = "auction"      # Bid submitted, auction still open
    REVIEW = "review"        # Auction closed, borrower reviewing bids
    ACCEPTED = "accepted"    # Loan term began
    REJECTED = "rejected"    # Bids rejected or ignored

    @classmethod
    def coerce(cls, value: Any) -> "InvestmentState":
        """
        Map a ledger-reported state onto the enum.

        Accepts an enum member, its string value (any case) or the ledger's
        ordinal in declaration order.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Unknown investment state: {value!r}")
        if isinstance(value, int):
            members = list(cls)
            if 0 <= value < len(members):
                return members[value]
            raise ValueError(f"Unknown investment state ordinal: {value}")
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        raise ValueError(f"Unknown investment state: {value!r}")

    def is_terminal(self) -> bool:
        return self in (InvestmentState.ACCEPTED, InvestmentState.REJECTED)


def to_decimal(value: Any) -> Decimal:
    """Convert a ledger amount (int, str, float, Decimal) to Decimal."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Not a numeric amount: {value!r}")
    try:
        # str() keeps floats like 0.05 from picking up binary noise
        return Decimal(str(value))
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Not a numeric amount: {value!r}") from exc


@dataclass(frozen=True)
class Bid:
    """Offer submitted to a loan auction."""
    amount: Decimal
    bidder: str
    min_interest_rate: Decimal

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Bid":
        return cls(
            amount=to_decimal(data["amount"]),
            bidder=str(data["bidder"]),
            min_interest_rate=to_decimal(data["min_interest_rate"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": str(self.amount),
            "bidder": self.bidder,
            "min_interest_rate": str(self.min_interest_rate),
        }


@dataclass
class Investment:
    """
    One tracked loan.

    The live ``loan`` handle is excluded from snapshots and comparisons; it is
    rehydrated from the ledger when the portfolio is loaded.
    """
    loan_id: str
    bid: Bid
    state: InvestmentState = InvestmentState.AUCTION
    balance: Optional[Decimal] = None
    refund_withdrawn: bool = False
    loan: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Durable form: everything except the loan handle."""
        data: Dict[str, Any] = {
            "bid": self.bid.to_dict(),
            "state": self.state.value,
        }
        if self.balance is not None:
            data["balance"] = str(self.balance)
        if self.refund_withdrawn:
            data["refund_withdrawn"] = True
        return data

    @classmethod
    def from_dict(cls, loan_id: str, data: Mapping[str, Any], loan: Any = None) -> "Investment":
        balance = data.get("balance")
        return cls(
            loan_id=loan_id,
            bid=Bid.from_dict(data["bid"]),
            state=InvestmentState.coerce(data.get("state", InvestmentState.AUCTION.value)),
            balance=to_decimal(balance) if balance is not None else None,
            refund_withdrawn=bool(data.get("refund_withdrawn", False)),
            loan=loan,
        )


class Portfolio:
    """
    In-memory portfolio owned by the investor.

    The map is the sole source of truth for which loans are tracked.
    Investments are never removed; terminal ones stay as history.
    """

    def __init__(self, investments: Optional[Dict[str, Investment]] = None):
        self._investments: Dict[str, Investment] = dict(investments or {})
        self._locks: Dict[str, asyncio.Lock] = {}

    def __contains__(self, loan_id: object) -> bool:
        return loan_id in self._investments

    def __len__(self) -> int:
        return len(self._investments)

    def __iter__(self) -> Iterator[Investment]:
        return iter(list(self._investments.values()))

    def ids(self) -> List[str]:
        return list(self._investments.keys())

    def get(self, loan_id: str) -> Optional[Investment]:
        return self._investments.get(loan_id)

    def require(self, loan_id: str) -> Investment:
        investment = self._investments.get(loan_id)
        if investment is None:
            raise UnknownInvestment(loan_id)
        return investment

    def add(self, investment: Investment) -> Investment:
        if investment.loan_id in self._investments:
            raise ValueError(f"Loan {investment.loan_id} is already in the portfolio")
        self._investments[investment.loan_id] = investment
        logger.debug(f"Tracking loan {investment.loan_id} in state {investment.state.value}")
        return investment

    @asynccontextmanager
    async def lock(self, loan_id: str) -> AsyncIterator[None]:
        """Serialize transition handlers for one loan."""
        lock = self._locks.setdefault(loan_id, asyncio.Lock())
        async with lock:
            yield

    def counts_by_state(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in InvestmentState}
        for investment in self._investments.values():
            counts[investment.state.value] += 1
        return counts

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Durable document for the whole portfolio."""
        return {loan_id: inv.to_dict() for loan_id, inv in self._investments.items()}
