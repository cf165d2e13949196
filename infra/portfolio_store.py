"""
auction-investor Infrastructure: Portfolio Store

Persistent portfolio snapshot with atomic writes.

The snapshot is one JSON object keyed by loan id. Live loan handles are never
written; they are resolved again through the ledger on load, and the ledger's
reported state replaces whatever state was recorded.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
import logging

from core.exceptions import LedgerCallFailed, StoreCorrupt, StoreMissing
from core.investment import Investment, InvestmentState, Portfolio
from core.ledger import Ledger

logger = logging.getLogger(__name__)

DEFAULT_PORTFOLIO_FILE = "~/.auction-investor/portfolio.json"


class PortfolioStore:
    """
    Portfolio snapshot stored as a JSON file.

    Features:
    - Atomic writes (temp file + fsync + rename)
    - Whole-portfolio saves; a failed save leaves the previous snapshot intact
    - Ledger rehydration of loan handles and states on load
    """

    def __init__(self, portfolio_file: Optional[str] = None):
        """
        Initialize portfolio store.

        Args:
            portfolio_file: Path to snapshot JSON file
                (default: $PORTFOLIO_FILE or ~/.auction-investor/portfolio.json)
        """
        if not portfolio_file:
            portfolio_file = os.getenv("PORTFOLIO_FILE", DEFAULT_PORTFOLIO_FILE)
        self.portfolio_file = Path(portfolio_file).expanduser()

        # Ensure directory exists
        self.portfolio_file.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initialized PortfolioStore at {self.portfolio_file}")

    def exists(self) -> bool:
        return self.portfolio_file.exists()

    def read_snapshot(self) -> Dict[str, Dict[str, Any]]:
        """
        Read the raw snapshot without touching the ledger.

        Raises:
            StoreMissing: no snapshot has been written yet
            StoreCorrupt: the file is not a JSON object
        """
        try:
            with open(self.portfolio_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise StoreMissing(self.portfolio_file) from None
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise StoreCorrupt(self.portfolio_file, exc) from exc

        if not isinstance(data, dict):
            raise StoreCorrupt(
                self.portfolio_file,
                ValueError(f"expected an object keyed by loan id, got {type(data).__name__}"),
            )
        return data

    async def load(
        self,
        ledger: Ledger,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Portfolio:
        """
        Load the portfolio and rehydrate every investment from the ledger.

        Args:
            ledger: Ledger used to resolve loan handles and states
            on_error: When given, a loan the ledger cannot resolve is reported
                here and kept with its snapshot state and no handle. Without
                it the first such failure is raised.

        Returns:
            Portfolio with live loan handles and ledger-reported states
        """
        snapshot = self.read_snapshot()

        investments: Dict[str, Investment] = {}
        for loan_id, entry in snapshot.items():
            try:
                investments[loan_id] = Investment.from_dict(loan_id, entry)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                raise StoreCorrupt(self.portfolio_file, ValueError(f"loan {loan_id}: {exc!r}")) from exc

        resolved = await asyncio.gather(
            *(self._resolve(ledger, loan_id) for loan_id in investments),
            return_exceptions=on_error is not None,
        )
        for result in resolved:
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"Could not resolve stored investment: {result}")
                on_error(result)
                continue

            loan_id, loan, state = result
            investment = investments[loan_id]
            if investment.state != state:
                logger.info(
                    f"Loan {loan_id}: ledger reports {state.value} "
                    f"(snapshot had {investment.state.value})"
                )
            investment.loan = loan
            investment.state = state

        logger.info(f"Loaded {len(investments)} investment(s) from {self.portfolio_file}")
        return Portfolio(investments)

    @staticmethod
    async def _resolve(ledger: Ledger, loan_id: str) -> Tuple[str, Any, InvestmentState]:
        try:
            loan = await ledger.get_loan(loan_id)
            state = await loan.get_state()
        except Exception as exc:
            raise LedgerCallFailed("get_loan", loan_id, exc) from exc
        return loan_id, loan, InvestmentState.coerce(state)

    def save(self, portfolio: Portfolio) -> None:
        """
        Save the whole portfolio atomically.

        Args:
            portfolio: Portfolio to snapshot (loan handles are dropped)
        """
        payload = json.dumps(portfolio.snapshot(), indent=2, sort_keys=True)

        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.portfolio_file.parent,
            prefix=".portfolio_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            os.replace(temp_path, self.portfolio_file)
        except Exception as e:
            logger.error(f"Failed to save portfolio: {e}")
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise

        logger.debug(f"Saved {len(portfolio)} investment(s) to {self.portfolio_file}")
