"""
Default decision engine.

Bids a fixed amount on every loan the ledger announces. Hosts with a real
policy inject their own DecisionEngine; this one exists so the daemon can run
end to end from config alone.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from core.investment import Bid, to_decimal
from core.ledger import DecisionEngine, Loan

logger = logging.getLogger(__name__)


class FixedBidEngine(DecisionEngine):
    """
    Bid ``amount`` at ``min_interest_rate`` from ``bidder`` on each loan.

    ``max_bids`` caps how many bids this engine will hand out over its
    lifetime (None = unlimited).
    """

    def __init__(
        self,
        amount: Any,
        bidder: str,
        min_interest_rate: Any,
        max_bids: Optional[int] = None,
        enabled: bool = True,
    ):
        self.amount = to_decimal(amount)
        self.bidder = bidder
        self.min_interest_rate = to_decimal(min_interest_rate)
        self.max_bids = max_bids
        self.enabled = enabled
        self._bids_issued = 0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "FixedBidEngine":
        return cls(
            amount=config["amount"],
            bidder=config["bidder"],
            min_interest_rate=config.get("min_interest_rate", Decimal("0")),
            max_bids=config.get("max_bids"),
            enabled=config.get("enabled", True),
        )

    @property
    def bids_issued(self) -> int:
        return self._bids_issued

    async def decide(self, loan: Loan) -> Optional[Bid]:
        if not self.enabled:
            logger.debug(f"Decision engine disabled, passing on loan {loan.loan_id}")
            return None
        if self.max_bids is not None and self._bids_issued >= self.max_bids:
            logger.info(f"Bid cap reached ({self.max_bids}), passing on loan {loan.loan_id}")
            return None

        self._bids_issued += 1
        return Bid(amount=self.amount, bidder=self.bidder, min_interest_rate=self.min_interest_rate)
