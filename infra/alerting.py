"""Webhook alerts for investor failures (refunds at risk, unreadable snapshots)."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from core.exceptions import BidValidationFailed, InvestorError, LedgerCallFailed, StoreCorrupt

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_ENV = "ALERT_WEBHOOK_URL"


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    @classmethod
    def from_string(cls, value: Optional[str], default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        """Case-insensitive lookup by name; unknown or blank names fall back to ``default``."""
        fallback = default or cls.WARNING
        member = cls.__members__.get((value or "").strip().upper())
        return member or fallback


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0  # Repeat alerts inside this window are dropped


@dataclass(frozen=True)
class Alert:
    severity: AlertSeverity
    title: str
    message: str
    loan_id: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        key = "|".join((self.severity.name, self.title, self.loan_id or "", self.message))
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def render(self, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Slack-style payload: one text line."""
        parts = [f"[{self.severity.name}] {self.title}", self.message]
        details = dict(context or {})
        if self.loan_id:
            details.setdefault("loan_id", self.loan_id)
        if details:
            parts.append("context=" + json.dumps(details, sort_keys=True, default=str))
        return {"text": " | ".join(part for part in parts if part)}


class AlertService:
    """
    Route investor errors to a webhook.

    A failed refund or snapshot read needs a human; a rejected bid usually
    does not, so it is sent as a warning. Identical alerts are sent once per
    dedupe window. Dry-run mode logs instead of posting.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = config.enabled and bool(config.webhook_url or config.dry_run)
        if config.enabled and not self._enabled:
            logger.warning("Alerts enabled without a webhook URL or dry_run; alerts are off")

        # fingerprint -> monotonic time the alert last went out
        self._sent_at: Dict[str, float] = {}

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        """Build from the ``monitoring.alerts`` section of app.yaml."""
        raw = raw_config or {}

        webhook_url = os.path.expandvars(raw.get("webhook_url") or "")
        if not webhook_url:
            webhook_url = os.getenv(raw.get("webhook_env", DEFAULT_WEBHOOK_ENV), "")

        return cls(AlertConfig(
            enabled=bool(enabled),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw.get("min_severity")),
            dry_run=bool(raw.get("dry_run", False)),
            timeout=float(raw.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw.get("dedupe_seconds", 60.0)),
        ))

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        loan_id: Optional[str] = None,
    ) -> bool:
        """Send an alert. Returns True if it went out (or was logged in dry-run)."""
        if not self._enabled or severity.value < self._config.min_severity.value:
            return False

        alert = Alert(severity, title, message, loan_id)
        now = time.monotonic()
        self._prune(now)
        last = self._sent_at.get(alert.fingerprint)
        if last is not None:
            logger.debug(f"Suppressed repeat alert '{title}' for loan {loan_id or '-'}")
            return False

        self._sent_at[alert.fingerprint] = now
        self._deliver(alert, context)
        return True

    def notify_error(self, exc: Exception) -> bool:
        """Map an investor error onto an alert."""
        if isinstance(exc, BidValidationFailed):
            return self.notify(AlertSeverity.WARNING, "Bid rejected by validation", str(exc))
        if isinstance(exc, LedgerCallFailed):
            return self.notify(
                AlertSeverity.CRITICAL,
                f"Ledger call failed: {exc.operation}",
                str(exc),
                loan_id=exc.loan_id,
            )
        if isinstance(exc, StoreCorrupt):
            return self.notify(AlertSeverity.CRITICAL, "Portfolio snapshot unreadable", str(exc))
        title = "Investor error" if isinstance(exc, InvestorError) else "Unexpected error"
        return self.notify(AlertSeverity.CRITICAL, f"{title}: {type(exc).__name__}", str(exc))

    def _prune(self, now: float) -> None:
        window = self._config.dedupe_seconds
        self._sent_at = {
            fingerprint: sent for fingerprint, sent in self._sent_at.items()
            if now - sent <= window
        }

    def _deliver(self, alert: Alert, context: Optional[Dict[str, Any]]) -> None:
        payload = alert.render(context)

        if self._config.dry_run:
            logger.info(f"[ALERT:{alert.severity.name}] {alert.title} - {alert.message} | {context or {}}")
            return

        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error(f"Alert webhook answered HTTP {response.status} for '{alert.title}'")
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error(f"Could not deliver alert '{alert.title}': {exc}")


__all__ = ["Alert", "AlertService", "AlertSeverity", "AlertConfig"]
