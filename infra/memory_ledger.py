"""
auction-investor Infrastructure: In-Memory Ledger

Simulated ledger for paper runs and tests.
Implements the same interface as a live ledger client, but loans, balances
and events live in process and are driven explicitly:

- create_loan(...)        -> registers a loan and announces it on the creation stream
- announce(loan_id)       -> (re)announces a registered loan
- emit(loan_id, event)    -> delivers a loan event and advances its state
- set_balance(...)        -> sets a bidder's token balance on a loan
- fail(loan_id, op, exc)  -> makes a loan call raise until cleared

Every write call (bid, withdraw, redeem) is recorded in ``calls``.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging

from core.investment import InvestmentState, to_decimal
from core.ledger import EventHandler, Ledger, Loan, LoanCreated, LoanEvent, Subscription

logger = logging.getLogger(__name__)

CREATED = "created"

# Ledger-side state each event moves a loan into
EVENT_STATES = {
    LoanEvent.AUCTION_COMPLETED: InvestmentState.REVIEW,
    LoanEvent.TERM_BEGIN: InvestmentState.ACCEPTED,
    LoanEvent.BIDS_REJECTED: InvestmentState.REJECTED,
    LoanEvent.REVIEW_PERIOD_COMPLETED: InvestmentState.REJECTED,
}


@dataclass
class LedgerCall:
    """One recorded write call"""
    operation: str                    # "bid" | "withdraw_investment" | "redeem_value"
    loan_id: str
    args: Tuple[Any, ...] = ()


class MemorySubscription(Subscription):
    """Subscription that delivers by awaiting each handler in turn."""

    def __init__(self, ledger: "MemoryLedger", key: Tuple[str, str]):
        self._ledger = ledger
        self.key = key
        self._handlers: List[EventHandler] = []
        self._active = True

    def watch(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def cancel(self) -> None:
        if self._active:
            self._active = False
            self._ledger._detach(self)

    @property
    def active(self) -> bool:
        return self._active

    async def deliver(self, payload: Any = None) -> None:
        for handler in list(self._handlers):
            await handler(payload)


@dataclass
class MemoryLoan(Loan):
    """Simulated loan with recorded calls and injectable failures"""
    loan_id: str
    ledger: "MemoryLedger" = field(repr=False)
    state: InvestmentState = InvestmentState.AUCTION
    balances: Dict[str, Decimal] = field(default_factory=dict)
    failures: Dict[str, Exception] = field(default_factory=dict)

    def _check(self, operation: str) -> None:
        exc = self.failures.get(operation)
        if exc is not None:
            raise exc

    async def get_state(self) -> InvestmentState:
        self._check("get_state")
        return self.state

    async def subscribe(self, event: LoanEvent) -> Subscription:
        self._check("subscribe")
        return self.ledger._subscribe((self.loan_id, event.value))

    async def bid(self, amount: Decimal, bidder: str, min_interest_rate: Decimal) -> None:
        self._check("bid")
        self.ledger._record("bid", self.loan_id, amount, bidder, min_interest_rate)

    async def balance_of(self, bidder: str) -> Decimal:
        self._check("balance_of")
        return self.balances.get(bidder, Decimal("0"))

    async def withdraw_investment(self, bidder: str) -> None:
        self._check("withdraw_investment")
        self.ledger._record("withdraw_investment", self.loan_id, bidder)

    async def redeem_value(self, bidder: str) -> None:
        self._check("redeem_value")
        self.ledger._record("redeem_value", self.loan_id, bidder)


class MemoryLedger(Ledger):
    """
    Simulated ledger.

    Deliveries are sequential and awaited, so a test that awaits ``emit``
    observes every handler's effects afterwards.
    """

    def __init__(self, **_options: Any):
        self.loans: Dict[str, MemoryLoan] = {}
        self.calls: List[LedgerCall] = []
        self._subscriptions: Dict[Tuple[str, str], List[MemorySubscription]] = {}
        self._delivered: Dict[Tuple[str, str], List[MemorySubscription]] = {}
        logger.info("MemoryLedger initialized")

    # Ledger interface -------------------------------------------------

    async def created_events(self) -> Subscription:
        return self._subscribe(("*", CREATED))

    async def get_loan(self, loan_id: str) -> MemoryLoan:
        loan = self.loans.get(loan_id)
        if loan is None:
            raise LookupError(f"Unknown loan {loan_id}")
        return loan

    # Simulation controls ----------------------------------------------

    def add_loan(self, loan_id: Optional[str] = None, state: Any = InvestmentState.AUCTION) -> MemoryLoan:
        """Register a loan without announcing it."""
        loan_id = loan_id or str(uuid.uuid4())
        loan = MemoryLoan(loan_id=loan_id, ledger=self, state=InvestmentState.coerce(state))
        self.loans[loan_id] = loan
        return loan

    async def create_loan(self, loan_id: Optional[str] = None) -> MemoryLoan:
        """Register a loan and announce it on the creation stream."""
        loan = self.add_loan(loan_id)
        await self.announce(loan.loan_id)
        return loan

    async def announce(self, loan_id: str) -> None:
        """Deliver a creation event for an already registered loan."""
        logger.debug(f"Loan {loan_id} created")
        await self._deliver(("*", CREATED), LoanCreated(loan_id))

    async def emit(self, loan_id: str, event: LoanEvent, redeliver: bool = False) -> None:
        """
        Deliver a loan event and advance the loan's ledger state.

        With ``redeliver`` the event is delivered again to every subscription
        that already received it, even if it was cancelled since
        (at-least-once delivery).
        """
        loan = await self.get_loan(loan_id)
        loan.state = EVENT_STATES[event]
        key = (loan_id, event.value)
        if redeliver:
            for subscription in list(self._delivered.get(key, [])):
                await subscription.deliver(None)
            return
        await self._deliver(key, None)

    def set_balance(self, loan_id: str, bidder: str, amount: Any) -> None:
        self.loans[loan_id].balances[bidder] = to_decimal(amount)

    def fail(self, loan_id: str, operation: str, exc: Optional[Exception] = None) -> None:
        self.loans[loan_id].failures[operation] = exc or RuntimeError(f"{operation} unavailable")

    def clear_failures(self, loan_id: str) -> None:
        self.loans[loan_id].failures.clear()

    def calls_for(self, operation: str, loan_id: Optional[str] = None) -> List[LedgerCall]:
        return [
            call for call in self.calls
            if call.operation == operation and (loan_id is None or call.loan_id == loan_id)
        ]

    def active_subscriptions(self, loan_id: Optional[str] = None) -> int:
        return sum(
            len(subs) for key, subs in self._subscriptions.items()
            if loan_id is None or key[0] == loan_id
        )

    # Internals --------------------------------------------------------

    def _subscribe(self, key: Tuple[str, str]) -> MemorySubscription:
        subscription = MemorySubscription(self, key)
        self._subscriptions.setdefault(key, []).append(subscription)
        return subscription

    def _detach(self, subscription: MemorySubscription) -> None:
        subs = self._subscriptions.get(subscription.key, [])
        if subscription in subs:
            subs.remove(subscription)

    async def _deliver(self, key: Tuple[str, str], payload: Any) -> None:
        for subscription in list(self._subscriptions.get(key, [])):
            if subscription.active:
                self._delivered.setdefault(key, []).append(subscription)
                await subscription.deliver(payload)

    def _record(self, operation: str, loan_id: str, *args: Any) -> None:
        self.calls.append(LedgerCall(operation=operation, loan_id=loan_id, args=args))
