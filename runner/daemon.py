"""
auction-investor Runner: Daemon

Host application around the Investor.

Flow:
1. Load and validate config/app.yaml
2. Acquire the single-instance lock
3. Build ledger client, decision engine, store, metrics and alerts
4. Start the Investor and wait for SIGINT/SIGTERM
5. Cancel every subscription and release the lock

Commands:
    auction-investor start   [--config-dir config]
    auction-investor collect LOAN_ID
    auction-investor status
"""

import argparse
import asyncio
import importlib
import json
import signal
import sys
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional
import logging

from core.decision import FixedBidEngine
from core.exceptions import InvestorError, StoreMissing
from core.investor import Investor
from core.ledger import DecisionEngine, Ledger
from infra.alerting import AlertService
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder
from infra.portfolio_store import PortfolioStore
from tools.config_validator import AppConfig, LedgerConfig, LoggingConfig, load_app_config

logger = logging.getLogger(__name__)

RECENT_ERRORS = 50


def setup_logging(log_cfg: LoggingConfig) -> None:
    log_path = Path(log_cfg.file).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, log_cfg.level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


def build_ledger(ledger_cfg: LedgerConfig) -> Ledger:
    """Instantiate the configured ledger client (``module:callable``)."""
    module_name, attr = ledger_cfg.factory.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    ledger = factory(**ledger_cfg.options)
    if not isinstance(ledger, Ledger):
        raise TypeError(f"{ledger_cfg.factory} returned {type(ledger).__name__}, not a Ledger")
    logger.info(f"Ledger client: {ledger_cfg.factory}")
    return ledger


class InvestorDaemon:
    """
    Long-running investor process.

    Responsibilities:
    - Wire config into collaborators
    - Route investor errors to logs and alerts
    - Start/stop the investor around signal handling
    """

    def __init__(
        self,
        config: AppConfig,
        ledger: Optional[Ledger] = None,
        decision_engine: Optional[DecisionEngine] = None,
    ):
        self.config = config

        monitoring = config.monitoring
        self.metrics = MetricsRecorder(enabled=monitoring.metrics_enabled, port=monitoring.metrics_port)
        self.alerts = AlertService.from_config(monitoring.alerts_enabled, monitoring.alerts)

        self.store = PortfolioStore(config.portfolio.path)
        self.ledger = ledger or build_ledger(config.ledger)
        self.decision_engine = decision_engine or FixedBidEngine.from_config(config.decision.model_dump())
        self.investor = Investor(
            self.ledger,
            self.decision_engine,
            self.store,
            metrics=self.metrics,
        )

        self.lock: Optional[SingleInstanceLock] = None
        self.recent_errors: Deque[Exception] = deque(maxlen=RECENT_ERRORS)
        self._stop_event = asyncio.Event()

    def handle_error(self, exc: Exception) -> None:
        """Error callback handed to the investor."""
        self.recent_errors.append(exc)
        logger.error(f"Investor error: {type(exc).__name__}: {exc}")
        self.alerts.notify_error(exc)

    def request_stop(self) -> None:
        logger.warning("Shutdown requested")
        self._stop_event.set()

    def _acquire_lock(self) -> None:
        lock_cfg = self.config.lock
        if not lock_cfg.enabled:
            return
        self.lock = SingleInstanceLock(self.config.app.name, lock_cfg.lock_dir)
        if not self.lock.acquire():
            raise RuntimeError("Another investor instance is already running")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig!r} not supported here")

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Run until request_stop() or a termination signal."""
        self._acquire_lock()
        try:
            self.metrics.start()
            await self.investor.start(self.handle_error)
            if install_signal_handlers:
                self._install_signal_handlers()
            logger.info(f"{self.config.app.name} running; tracking {len(self.investor.portfolio)} investment(s)")
            await self._stop_event.wait()
        finally:
            await self.investor.stop()
            if self.lock:
                self.lock.release()
            logger.info("Daemon stopped")

    async def collect(self, loan_id: str) -> None:
        await self.investor.collect(loan_id)

    def status(self) -> Dict[str, Any]:
        """Summarize the persisted snapshot without contacting the ledger."""
        try:
            snapshot = self.store.read_snapshot()
        except StoreMissing:
            snapshot = {}

        by_state: Dict[str, int] = {}
        pending_refunds: List[str] = []
        for loan_id, entry in snapshot.items():
            state = entry.get("state", "unknown")
            by_state[state] = by_state.get(state, 0) + 1
            if state in ("accepted", "rejected") and not entry.get("refund_withdrawn"):
                pending_refunds.append(loan_id)

        return {
            "snapshot": str(self.store.portfolio_file),
            "investments": len(snapshot),
            "by_state": by_state,
            "unrefunded_terminal": sorted(pending_refunds),
        }


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="Loan auction investor daemon")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("start", help="Run the daemon until interrupted")
    collect = commands.add_parser("collect", help="Redeem value on a funded investment")
    collect.add_argument("loan_id")
    commands.add_parser("status", help="Summarize the portfolio snapshot")

    args = parser.parse_args(argv)

    try:
        config = load_app_config(args.config_dir)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    setup_logging(config.logging)
    daemon = InvestorDaemon(config)

    try:
        if args.command == "start":
            asyncio.run(daemon.run())
        elif args.command == "collect":
            asyncio.run(daemon.collect(args.loan_id))
        elif args.command == "status":
            print(json.dumps(daemon.status(), indent=2))
    except InvestorError as exc:
        logger.error(str(exc))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
