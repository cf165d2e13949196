"""Prometheus-backed metrics hooks for the investor and lifecycle."""

from __future__ import annotations

import logging
from collections import Counter as Tally
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "investor_"
PORT_ATTEMPTS = 4


class MetricsRecorder:
    """
    Expose investor activity via Prometheus.

    Local tallies are kept even when the exporter is disabled so the status
    report and tests can read them.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._tally: Tally = Tally()
        self._last_error: Optional[str] = None

        if not self._enabled:
            self._bids_counter = None
            self._validation_failures_counter = None
            self._withdrawals_counter = None
            self._redemptions_counter = None
            self._transitions_counter = None
            self._handler_errors_counter = None
            self._investments_gauge = None
            return

        self._bids_counter = Counter(
            "investor_bids_submitted_total",
            "Bids accepted by the ledger",
        )
        self._validation_failures_counter = Counter(
            "investor_bid_validation_failures_total",
            "Bids dropped because they failed schema validation",
        )
        self._withdrawals_counter = Counter(
            "investor_withdrawals_total",
            "Refund withdrawals acknowledged by the ledger",
            labelnames=("reason",),  # reason: "rejected", "underfunded"
        )
        self._redemptions_counter = Counter(
            "investor_redemptions_total",
            "Value redemptions submitted for matured investments",
        )
        self._transitions_counter = Counter(
            "investor_transitions_total",
            "Lifecycle transitions by target state",
            labelnames=("state",),
        )
        self._handler_errors_counter = Counter(
            "investor_handler_errors_total",
            "Errors surfaced from event handlers",
            labelnames=("error_type",),
        )
        self._investments_gauge = Gauge(
            "investor_investments",
            "Tracked investments by lifecycle state",
            labelnames=("state",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        # start() may have disabled an instance whose collectors are registered
        if cls._instance is not None and cls._instance._bids_counter is not None:
            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)

            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        """Expose /metrics; tries the next few ports if the configured one is taken."""
        if not self._enabled or self._started:
            return

        candidates = range(self._port, self._port + PORT_ATTEMPTS)
        error: Optional[OSError] = None
        for port in candidates:
            try:
                start_http_server(port)
            except OSError as exc:
                error = exc
                logger.debug("Metrics port %s unavailable: %s", port, exc)
                continue

            if port != self._port:
                logger.warning("Metrics port %s busy, exporting on %s", self._port, port)
                self._port = port
            self._started = True
            logger.info("Prometheus metrics on :%s/metrics", port)
            return

        # Local tallies keep working; only the exporter is off
        self._enabled = False
        logger.error("Metrics exporter disabled, ports %s-%s unavailable: %s",
                     candidates.start, candidates.stop - 1, error)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_bid(self) -> None:
        self._tally["bids"] += 1
        if self._enabled and self._bids_counter:
            self._bids_counter.inc()

    def record_validation_failure(self) -> None:
        self._tally["validation_failures"] += 1
        if self._enabled and self._validation_failures_counter:
            self._validation_failures_counter.inc()

    def record_withdrawal(self, reason: str) -> None:
        self._tally["withdrawals"] += 1
        if self._enabled and self._withdrawals_counter:
            self._withdrawals_counter.labels(reason=reason).inc()

    def record_redemption(self) -> None:
        self._tally["redemptions"] += 1
        if self._enabled and self._redemptions_counter:
            self._redemptions_counter.inc()

    def record_transition(self, state: str) -> None:
        self._tally[f"transition:{state}"] += 1
        if self._enabled and self._transitions_counter:
            self._transitions_counter.labels(state=state).inc()

    def record_handler_error(self, error_type: str) -> None:
        self._tally["handler_errors"] += 1
        self._last_error = error_type
        if self._enabled and self._handler_errors_counter:
            self._handler_errors_counter.labels(error_type=error_type).inc()

    def record_portfolio(self, counts_by_state: Dict[str, int]) -> None:
        """Record investment counts per lifecycle state"""
        if self._enabled and self._investments_gauge:
            for state, count in counts_by_state.items():
                self._investments_gauge.labels(state=state).set(max(count, 0))

    def snapshot(self) -> Dict[str, int]:
        return dict(self._tally)

    def last_error(self) -> Optional[str]:
        return self._last_error
