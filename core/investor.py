"""
auction-investor Core: Investor

Orchestrates bidding and lifecycle tracking.

Flow:
1. Restore the portfolio snapshot (missing snapshot = empty portfolio)
2. Watch the ledger's loan-creation stream
3. Re-enter every restored investment to re-arm its watchers
4. For each new loan: decide → validate → bid → track → persist

Decision, validation and bid-submission failures are reported through the
host's error callback and only abort the loan they concern.
"""

import asyncio
from typing import Any, Callable, Optional, Set
import logging

from core.bid_schema import BidValidator
from core.exceptions import BidValidationFailed, LedgerCallFailed, StoreMissing
from core.investment import Bid, Investment, InvestmentState, Portfolio
from core.ledger import DecisionEngine, Ledger, Subscription, Validator
from core.lifecycle import InvestmentLifecycle

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[Exception], None]


class Investor:
    """
    Portfolio owner and event wiring.

    Responsibilities:
    - Restore and persist the portfolio
    - Turn loan-creation events into validated bids
    - Hand every investment to the lifecycle
    - Tear down every subscription on stop
    """

    def __init__(
        self,
        ledger: Ledger,
        decision_engine: DecisionEngine,
        store,
        validator: Optional[Validator] = None,
        metrics=None,
    ):
        self.ledger = ledger
        self.decision_engine = decision_engine
        self.store = store
        self.validator = validator or BidValidator()
        self.metrics = metrics

        self._portfolio: Optional[Portfolio] = None
        self._lifecycle: Optional[InvestmentLifecycle] = None
        self._created: Optional[Subscription] = None
        self._on_error: Optional[ErrorCallback] = None
        self._pending: Set[str] = set()
        self._running = False

    @property
    def portfolio(self) -> Optional[Portfolio]:
        return self._portfolio

    @property
    def lifecycle(self) -> Optional[InvestmentLifecycle]:
        return self._lifecycle

    def is_running(self) -> bool:
        return self._running

    async def start(self, on_error: ErrorCallback) -> None:
        """
        Restore state and begin watching the ledger.

        Raises:
            StoreCorrupt: the snapshot exists but cannot be read
            RuntimeError: already started
        """
        if self._running:
            raise RuntimeError("Investor already started")

        self._on_error = on_error
        self._portfolio = await self._restore(on_error=self._report)
        self._lifecycle = InvestmentLifecycle(
            self._portfolio,
            self.store,
            metrics=self.metrics,
            on_error=self._report,
        )

        self._created = await self.ledger.created_events()
        self._created.watch(self._on_loan_created)
        self._running = True

        # Investments the ledger could not resolve were reported by the store
        restored = [investment.loan_id for investment in self._portfolio if investment.loan is not None]
        if restored:
            logger.info(f"Re-arming {len(restored)} restored investment(s)")
            await asyncio.gather(*(self._refresh(loan_id) for loan_id in restored))

        if self.metrics:
            self.metrics.record_portfolio(self._portfolio.counts_by_state())
        logger.info("Investor started")

    async def stop(self) -> None:
        """Cancel the creation stream and every lifecycle watcher."""
        if self._created is not None:
            self._created.cancel()
            self._created = None

        cancelled = self._lifecycle.cancel_all() if self._lifecycle else 0
        if self._running:
            logger.info(f"Investor stopped ({cancelled} watcher(s) cancelled)")
        self._running = False

    async def collect(self, loan_id: str) -> None:
        """
        Redeem the value owed to the bidder on a funded investment.

        Raises:
            UnknownInvestment: loan id not in the portfolio
            LedgerCallFailed: the redemption call failed
        """
        if self._portfolio is None:
            self._portfolio = await self._restore()

        investment = self._portfolio.require(loan_id)
        if investment.state != InvestmentState.ACCEPTED:
            logger.warning(f"Collecting loan {loan_id} in state {investment.state.value}")

        loan = investment.loan
        if loan is None:
            loan = await self.ledger.get_loan(loan_id)
            investment.loan = loan

        bidder = investment.bid.bidder
        try:
            await loan.redeem_value(bidder)
        except Exception as exc:
            raise LedgerCallFailed("redeem_value", loan_id, exc) from exc

        logger.info(f"Redeemed value on loan {loan_id} for {bidder}")
        if self.metrics:
            self.metrics.record_redemption()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _restore(self, on_error: Optional[ErrorCallback] = None) -> Portfolio:
        try:
            return await self.store.load(self.ledger, on_error=on_error)
        except StoreMissing:
            logger.info("No portfolio snapshot found, starting empty")
            return Portfolio()

    async def _refresh(self, loan_id: str) -> None:
        try:
            await self._lifecycle.refresh(loan_id)
        except Exception as exc:
            logger.error(f"Failed to refresh loan {loan_id}: {exc}", exc_info=True)
            self._report(exc)

    def _report(self, exc: Exception) -> None:
        if self._on_error is not None:
            self._on_error(exc)

    async def _on_loan_created(self, event: Any) -> None:
        loan_id = event.loan_id
        if loan_id in self._portfolio or loan_id in self._pending:
            logger.debug(f"Loan {loan_id} already tracked, ignoring creation event")
            return

        self._pending.add(loan_id)
        try:
            tracked = await self._consider(loan_id)
        except BidValidationFailed as exc:
            logger.warning(f"Loan {loan_id}: {exc}")
            if self.metrics:
                self.metrics.record_validation_failure()
            self._report(exc)
            return
        except Exception as exc:
            logger.error(f"Loan {loan_id}: bid attempt failed: {exc}", exc_info=True)
            self._report(exc)
            return
        finally:
            self._pending.discard(loan_id)

        if not tracked:
            return
        if not self._running:
            # Kept in the portfolio; the next start re-arms it
            logger.info(f"Loan {loan_id}: investor stopped, lifecycle not started")
            return
        await self._refresh(loan_id)

    async def _consider(self, loan_id: str) -> bool:
        """Decide, validate and bid. Returns True when an investment was added."""
        try:
            loan = await self.ledger.get_loan(loan_id)
        except Exception as exc:
            raise LedgerCallFailed("get_loan", loan_id, exc) from exc

        proposal = await self.decision_engine.decide(loan)
        if proposal is None:
            logger.debug(f"Decision engine passed on loan {loan_id}")
            return False
        if not self._running:
            logger.info(f"Loan {loan_id}: investor stopped before bidding, dropping proposal")
            return False

        self.validator.validate(proposal)
        bid = self._to_bid(proposal)

        try:
            await loan.bid(bid.amount, bid.bidder, bid.min_interest_rate)
        except Exception as exc:
            raise LedgerCallFailed("bid", loan_id, exc) from exc

        logger.info(
            f"Bid {bid.amount} on loan {loan_id} from {bid.bidder} "
            f"(min rate {bid.min_interest_rate})"
        )
        if self.metrics:
            self.metrics.record_bid()

        self._portfolio.add(Investment(loan_id=loan_id, bid=bid, state=InvestmentState.AUCTION, loan=loan))
        try:
            self.store.save(self._portfolio)
        except Exception as exc:
            # The bid is live on the ledger; keep tracking it and let a later save catch up
            logger.error(f"Loan {loan_id}: bid placed but portfolio snapshot not saved: {exc}", exc_info=True)
            self._report(exc)
        return True

    @staticmethod
    def _to_bid(proposal: Any) -> Bid:
        if isinstance(proposal, Bid):
            return proposal
        try:
            return Bid.from_dict(proposal)
        except (KeyError, TypeError, ValueError) as exc:
            raise BidValidationFailed([f"bid: {exc}"], bid=proposal) from exc
