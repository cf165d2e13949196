"""
auction-investor Core: Investment Lifecycle

Event-driven state machine that follows one investment from auction to its
outcome and takes compensating action when a bid is not honored.

States: AUCTION → REVIEW → (ACCEPTED | REJECTED)

Entry actions:
- AUCTION:  watch auction_completed, and arm the REVIEW watchers right away
- REVIEW:   watch term_begin, bids_rejected, review_period_completed
- ACCEPTED: if no refund yet, withdraw when the balance is below the bid
- REJECTED: if no refund yet, withdraw

Watchers are one-shot: each cancels its subscription before its transition
runs, and a redelivery to a watcher that already fired is dropped. Every
transition for a loan runs under that loan's portfolio lock and re-checks
``refund_withdrawn`` before withdrawing, so re-entry after a restart and
duplicate deliveries are safe to replay. The snapshot is saved after every
state or flag change.
"""

from typing import Awaitable, Callable, Dict, Optional, Set
import logging

from core.exceptions import LedgerCallFailed
from core.investment import Investment, InvestmentState, Portfolio, to_decimal
from core.ledger import LoanEvent, Subscription

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[Exception], None]
Transition = Callable[[Investment], Awaitable[None]]

REVIEW_EVENTS = (
    LoanEvent.TERM_BEGIN,
    LoanEvent.BIDS_REJECTED,
    LoanEvent.REVIEW_PERIOD_COMPLETED,
)


class InvestmentLifecycle:
    """
    Drives investments in a portfolio through their lifecycle.

    Keeps a registry of every subscription it armed (loan id → event →
    subscription) so transitions and shutdown cancel exactly those.
    """

    def __init__(self, portfolio: Portfolio, store, metrics=None, on_error: Optional[ErrorCallback] = None):
        self.portfolio = portfolio
        self.store = store
        self.metrics = metrics
        self.on_error = on_error
        self._watchers: Dict[str, Dict[LoanEvent, Subscription]] = {}
        self._closed = False

        self._entry_actions: Dict[InvestmentState, Transition] = {
            InvestmentState.AUCTION: self._enter_auction,
            InvestmentState.REVIEW: self._enter_review,
            InvestmentState.ACCEPTED: self._refresh_accepted,
            InvestmentState.REJECTED: self._refresh_rejected,
        }
        self._transitions: Dict[LoanEvent, Transition] = {
            LoanEvent.AUCTION_COMPLETED: self._on_auction_completed,
            LoanEvent.TERM_BEGIN: self._on_term_begin,
            LoanEvent.BIDS_REJECTED: self._on_bids_rejected,
            LoanEvent.REVIEW_PERIOD_COMPLETED: self._on_review_period_completed,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def refresh(self, loan_id: str) -> None:
        """
        (Re-)enter the investment's current state.

        Arms the watchers the state needs, or runs the pending refund check
        for terminal states. Ledger failures propagate to the caller.
        """
        async with self.portfolio.lock(loan_id):
            investment = self.portfolio.require(loan_id)
            logger.debug(f"Refreshing loan {loan_id} in state {investment.state.value}")
            await self._entry_actions[investment.state](investment)

    def watching(self, loan_id: str) -> Set[LoanEvent]:
        """Events currently armed for a loan."""
        return {
            event
            for event, subscription in self._watchers.get(loan_id, {}).items()
            if subscription.active
        }

    def cancel(self, loan_id: str) -> int:
        """Cancel every subscription armed for a loan. Returns the count."""
        subscriptions = self._watchers.pop(loan_id, {})
        for subscription in subscriptions.values():
            subscription.cancel()
        if subscriptions:
            logger.debug(f"Cancelled {len(subscriptions)} watcher(s) for loan {loan_id}")
        return len(subscriptions)

    def cancel_all(self) -> int:
        """Cancel every subscription this lifecycle armed and refuse to arm more."""
        self._closed = True
        return sum(self.cancel(loan_id) for loan_id in list(self._watchers))

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Entry actions
    # ------------------------------------------------------------------

    async def _enter_auction(self, investment: Investment) -> None:
        await self._watch(investment, LoanEvent.AUCTION_COMPLETED)
        # Auction completion is advisory; review events may arrive first.
        await self._enter_review(investment)

    async def _enter_review(self, investment: Investment) -> None:
        for event in REVIEW_EVENTS:
            await self._watch(investment, event)

    async def _refresh_accepted(self, investment: Investment) -> None:
        if investment.refund_withdrawn:
            return
        balance = await self._balance_of(investment)
        if balance < investment.bid.amount:
            logger.info(
                f"Loan {investment.loan_id}: balance {balance} below bid "
                f"{investment.bid.amount}, withdrawing remainder"
            )
            await self._withdraw(investment, reason="underfunded")
            self._persist()

    async def _refresh_rejected(self, investment: Investment) -> None:
        if investment.refund_withdrawn:
            return
        await self._withdraw(investment, reason="rejected")
        self._persist()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _on_auction_completed(self, investment: Investment) -> None:
        if investment.state.is_terminal():
            logger.info(f"Loan {investment.loan_id}: auction_completed after {investment.state.value}, ignoring")
            return
        if investment.state == InvestmentState.AUCTION:
            self._set_state(investment, InvestmentState.REVIEW)
            self._persist()
        # Watchers still armed from AUCTION entry are left alone
        await self._enter_review(investment)

    async def _on_term_begin(self, investment: Investment) -> None:
        if investment.state.is_terminal():
            logger.info(f"Loan {investment.loan_id}: term_begin after {investment.state.value}, ignoring")
            return

        balance = await self._balance_of(investment)
        if balance < investment.bid.amount and not investment.refund_withdrawn:
            await self._withdraw(investment, reason="underfunded")

        investment.balance = balance
        self._set_state(investment, InvestmentState.ACCEPTED)
        self._persist()
        self.cancel(investment.loan_id)

    async def _on_bids_rejected(self, investment: Investment) -> None:
        await self._reject(investment, "bids_rejected")

    async def _on_review_period_completed(self, investment: Investment) -> None:
        await self._reject(investment, "review_period_completed")

    async def _reject(self, investment: Investment, cause: str) -> None:
        if investment.state.is_terminal():
            logger.info(f"Loan {investment.loan_id}: {cause} after {investment.state.value}, ignoring")
            return

        if not investment.refund_withdrawn:
            await self._withdraw(investment, reason="rejected")

        self._set_state(investment, InvestmentState.REJECTED)
        self._persist()
        self.cancel(investment.loan_id)

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    async def _watch(self, investment: Investment, event: LoanEvent) -> None:
        loan_id = investment.loan_id
        if self._closed:
            logger.debug(f"Loan {loan_id}: lifecycle closed, not watching {event.value}")
            return

        existing = self._watchers.get(loan_id, {}).get(event)
        if existing is not None and existing.active:
            return

        subscription = await investment.loan.subscribe(event)
        if self._closed:
            # cancel_all() ran while the subscription was being created
            subscription.cancel()
            return
        self._watchers.setdefault(loan_id, {})[event] = subscription
        fired = False

        async def on_event(_payload=None) -> None:
            nonlocal fired
            if fired:
                logger.debug(f"Loan {loan_id}: duplicate {event.value} delivery dropped")
                return
            fired = True
            self._release(loan_id, event, subscription)
            await self._dispatch(loan_id, event)

        subscription.watch(on_event)
        logger.debug(f"Loan {loan_id}: watching {event.value}")

    def _release(self, loan_id: str, event: LoanEvent, subscription: Subscription) -> None:
        subscription.cancel()
        armed = self._watchers.get(loan_id)
        if armed and armed.get(event) is subscription:
            del armed[event]
            if not armed:
                del self._watchers[loan_id]

    async def _dispatch(self, loan_id: str, event: LoanEvent) -> None:
        logger.info(f"Loan {loan_id}: {event.value}")
        try:
            async with self.portfolio.lock(loan_id):
                investment = self.portfolio.require(loan_id)
                await self._transitions[event](investment)
        except Exception as exc:
            logger.error(f"Loan {loan_id}: {event.value} handler failed: {exc}", exc_info=True)
            if self.metrics:
                self.metrics.record_handler_error(type(exc).__name__)
            if self.on_error is None:
                raise
            self.on_error(exc)

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _balance_of(self, investment: Investment):
        try:
            balance = await investment.loan.balance_of(investment.bid.bidder)
        except Exception as exc:
            raise LedgerCallFailed("balance_of", investment.loan_id, exc) from exc
        return to_decimal(balance)

    async def _withdraw(self, investment: Investment, reason: str) -> None:
        try:
            await investment.loan.withdraw_investment(investment.bid.bidder)
        except Exception as exc:
            raise LedgerCallFailed("withdraw_investment", investment.loan_id, exc) from exc

        investment.refund_withdrawn = True
        logger.info(f"Loan {investment.loan_id}: refund withdrawn ({reason})")
        if self.metrics:
            self.metrics.record_withdrawal(reason)

    def _set_state(self, investment: Investment, state: InvestmentState) -> None:
        logger.info(f"Loan {investment.loan_id}: {investment.state.value} → {state.value}")
        investment.state = state
        if self.metrics:
            self.metrics.record_transition(state.value)

    def _persist(self) -> None:
        self.store.save(self.portfolio)
        if self.metrics:
            self.metrics.record_portfolio(self.portfolio.counts_by_state())
