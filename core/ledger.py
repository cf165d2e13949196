"""
Ledger, Decision Engine and Validator Interfaces

Defines the boundary the investor core consumes. Concrete ledgers (a chain
client, or the in-memory ledger used for paper runs) implement these.

The core never calls a transport directly; every ledger interaction goes
through a Loan handle or the Ledger's creation stream.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from core.investment import Bid, InvestmentState

EventHandler = Callable[[Any], Awaitable[None]]


class LoanEvent(Enum):
    """Per-loan events the lifecycle can watch"""
    AUCTION_COMPLETED = "auction_completed"
    TERM_BEGIN = "term_begin"
    BIDS_REJECTED = "bids_rejected"
    REVIEW_PERIOD_COMPLETED = "review_period_completed"


@dataclass(frozen=True)
class LoanCreated:
    """Payload of the ledger's global loan-creation stream."""
    loan_id: str


class Subscription(ABC):
    """
    Push-based event subscription.

    ``watch`` registers an async handler invoked once per delivered event;
    ``cancel`` stops delivery and is safe to call more than once.
    """

    @abstractmethod
    def watch(self, handler: EventHandler) -> None:
        ...

    @abstractmethod
    def cancel(self) -> None:
        ...

    @property
    @abstractmethod
    def active(self) -> bool:
        ...


class Loan(ABC):
    """Live handle on one externally managed loan."""

    loan_id: str

    @abstractmethod
    async def get_state(self) -> Union[InvestmentState, str, int]:
        ...

    @abstractmethod
    async def subscribe(self, event: LoanEvent) -> Subscription:
        ...

    @abstractmethod
    async def bid(self, amount: Decimal, bidder: str, min_interest_rate: Decimal) -> None:
        ...

    @abstractmethod
    async def balance_of(self, bidder: str) -> Decimal:
        ...

    @abstractmethod
    async def withdraw_investment(self, bidder: str) -> None:
        ...

    @abstractmethod
    async def redeem_value(self, bidder: str) -> None:
        ...


class Ledger(ABC):
    """Loan registry and global event source."""

    @abstractmethod
    async def created_events(self) -> Subscription:
        ...

    @abstractmethod
    async def get_loan(self, loan_id: str) -> Loan:
        ...


class DecisionEngine(ABC):
    """
    Bid policy.

    Must not call ledger write methods; the investor submits whatever bid
    this returns after validation.
    """

    @abstractmethod
    async def decide(self, loan: Loan) -> Optional[Union[Bid, Mapping[str, Any]]]:
        """Return a bid for the loan, or None to pass."""


class Validator(ABC):
    """Structural validation of a bid payload before submission."""

    @abstractmethod
    def validate(self, bid: Union[Bid, Mapping[str, Any]]) -> None:
        """Raise BidValidationFailed when the bid is malformed."""
