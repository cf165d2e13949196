"""Test helpers for auction-investor test suite"""

from tests.helpers.ledger_stubs import (
    BIDDER,
    StaticEngine,
    FailingEngine,
    GatedEngine,
    make_bid,
    make_investment,
    read_snapshot,
    write_snapshot,
)

__all__ = [
    "BIDDER",
    "StaticEngine",
    "FailingEngine",
    "GatedEngine",
    "make_bid",
    "make_investment",
    "read_snapshot",
    "write_snapshot",
]
