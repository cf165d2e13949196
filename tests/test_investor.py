"""
Investor orchestration against the in-memory ledger.

Verifies:
1. New loans are decided, validated, bid on, tracked and persisted
2. Decision, validation and bid failures only abort the loan concerned
3. Restarting from a snapshot re-arms watchers without repeating side effects
4. collect() redeems value on tracked investments only
5. stop() releases every subscription

Run: pytest tests/test_investor.py -v
"""

import asyncio
from decimal import Decimal

import pytest

from core.exceptions import BidValidationFailed, LedgerCallFailed, StoreCorrupt, UnknownInvestment
from core.investment import InvestmentState
from core.investor import Investor
from core.ledger import LoanEvent
from infra.metrics import MetricsRecorder
from tests.helpers import (
    BIDDER,
    FailingEngine,
    GatedEngine,
    StaticEngine,
    make_investment,
    read_snapshot,
    write_snapshot,
)

PROPOSAL = {"amount": 100, "bidder": BIDDER, "min_interest_rate": "0.05"}


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=False)


@pytest.fixture
def engine():
    return StaticEngine(PROPOSAL)


@pytest.fixture
def investor(ledger, engine, store, metrics):
    return Investor(ledger, engine, store, metrics=metrics)


class TestBidding:

    @pytest.mark.asyncio
    async def test_new_loan_bid_and_tracked(self, investor, ledger, engine, metrics, errors, snapshot_path):
        await investor.start(errors.append)

        await ledger.create_loan("loan-1")

        bids = ledger.calls_for("bid", "loan-1")
        assert [call.args for call in bids] == [(Decimal("100"), BIDDER, Decimal("0.05"))]
        assert engine.seen == ["loan-1"]

        investment = investor.portfolio.require("loan-1")
        assert investment.state is InvestmentState.AUCTION
        assert investment.loan is ledger.loans["loan-1"]
        assert investor.lifecycle.watching("loan-1") == set(LoanEvent)

        assert read_snapshot(snapshot_path) == {
            "loan-1": {
                "bid": {"amount": "100", "bidder": BIDDER, "min_interest_rate": "0.05"},
                "state": "auction",
            }
        }
        assert metrics.snapshot()["bids"] == 1
        assert errors == []

    @pytest.mark.asyncio
    async def test_invalid_bid_never_submitted(self, ledger, store, metrics, errors, snapshot_path):
        engine = StaticEngine({"amount": -5, "bidder": BIDDER, "min_interest_rate": "0.05"})
        investor = Investor(ledger, engine, store, metrics=metrics)
        await investor.start(errors.append)

        await ledger.create_loan("loan-1")

        assert ledger.calls_for("bid") == []
        assert "loan-1" not in investor.portfolio
        assert not snapshot_path.exists()
        assert len(errors) == 1
        assert isinstance(errors[0], BidValidationFailed)
        assert errors[0].errors[0].startswith("amount:")
        assert metrics.snapshot()["validation_failures"] == 1

    @pytest.mark.asyncio
    async def test_missing_amount_reported(self, ledger, store, errors):
        engine = StaticEngine({"bidder": BIDDER, "min_interest_rate": "0.05"})
        investor = Investor(ledger, engine, store)
        await investor.start(errors.append)

        await ledger.create_loan("loan-1")

        assert ledger.calls_for("bid") == []
        assert len(investor.portfolio) == 0
        assert errors[0].errors == ["amount: Field required"]

    @pytest.mark.asyncio
    async def test_malformed_bidder_rejected(self, ledger, store, errors):
        engine = StaticEngine({"amount": 10, "bidder": "not-an-address", "min_interest_rate": 0})
        investor = Investor(ledger, engine, store)
        await investor.start(errors.append)

        await ledger.create_loan("loan-1")

        assert ledger.calls_for("bid") == []
        assert isinstance(errors[0], BidValidationFailed)

    @pytest.mark.asyncio
    async def test_engine_pass_tracks_nothing(self, ledger, store, errors):
        investor = Investor(ledger, StaticEngine(None), store)
        await investor.start(errors.append)

        await ledger.create_loan("loan-1")

        assert ledger.calls_for("bid") == []
        assert len(investor.portfolio) == 0
        assert errors == []

    @pytest.mark.asyncio
    async def test_engine_failure_isolated_to_loan(self, ledger, store, errors):
        investor = Investor(ledger, FailingEngine(["loan-bad"], PROPOSAL), store)
        await investor.start(errors.append)

        await ledger.create_loan("loan-bad")
        await ledger.create_loan("loan-good")

        assert investor.portfolio.ids() == ["loan-good"]
        assert [call.loan_id for call in ledger.calls_for("bid")] == ["loan-good"]
        assert len(errors) == 1
        assert "loan-bad" in str(errors[0])

    @pytest.mark.asyncio
    async def test_bid_submission_failure_reported(self, investor, ledger, errors, snapshot_path):
        await investor.start(errors.append)
        ledger.add_loan("loan-1")
        ledger.fail("loan-1", "bid")

        await ledger.announce("loan-1")

        assert "loan-1" not in investor.portfolio
        assert not snapshot_path.exists()
        assert isinstance(errors[0], LedgerCallFailed)
        assert errors[0].operation == "bid"
        assert errors[0].loan_id == "loan-1"

    @pytest.mark.asyncio
    async def test_duplicate_announcement_bids_once(self, investor, ledger, errors):
        await investor.start(errors.append)

        await ledger.create_loan("loan-1")
        await ledger.announce("loan-1")

        assert len(ledger.calls_for("bid", "loan-1")) == 1
        assert errors == []

    @pytest.mark.asyncio
    async def test_failed_save_after_bid_still_tracked(self, investor, ledger, store, errors, snapshot_path, monkeypatch):
        real_save = store.save
        attempts = []

        def save_fails_once(portfolio):
            attempts.append(len(portfolio))
            if len(attempts) == 1:
                raise OSError("disk full")
            real_save(portfolio)

        monkeypatch.setattr(store, "save", save_fails_once)
        await investor.start(errors.append)

        await ledger.create_loan("loan-1")

        assert len(ledger.calls_for("bid", "loan-1")) == 1
        assert [str(exc) for exc in errors] == ["disk full"]
        assert not snapshot_path.exists()
        assert investor.lifecycle.watching("loan-1") == set(LoanEvent)

        # The next transition persists the investment it missed
        await ledger.emit("loan-1", LoanEvent.BIDS_REJECTED)

        assert len(ledger.calls_for("withdraw_investment", "loan-1")) == 1
        entry = read_snapshot(snapshot_path)["loan-1"]
        assert entry["state"] == "rejected"
        assert entry["refund_withdrawn"] is True

    @pytest.mark.asyncio
    async def test_full_lifecycle_through_investor(self, investor, ledger, errors, snapshot_path):
        await investor.start(errors.append)
        await ledger.create_loan("loan-1")
        ledger.set_balance("loan-1", BIDDER, 100)

        await ledger.emit("loan-1", LoanEvent.AUCTION_COMPLETED)
        await ledger.emit("loan-1", LoanEvent.TERM_BEGIN)

        assert investor.portfolio.require("loan-1").state is InvestmentState.ACCEPTED
        assert read_snapshot(snapshot_path)["loan-1"]["state"] == "accepted"
        assert ledger.calls_for("withdraw_investment") == []
        assert errors == []


class TestRestart:

    @pytest.mark.asyncio
    async def test_restart_rearms_without_rebidding(self, ledger, engine, store, errors):
        first = Investor(ledger, engine, store)
        await first.start(errors.append)
        await ledger.create_loan("loan-1")
        await first.stop()

        second = Investor(ledger, engine, store)
        await second.start(errors.append)

        assert len(ledger.calls_for("bid")) == 1
        assert second.lifecycle.watching("loan-1") == set(LoanEvent)

        await ledger.emit("loan-1", LoanEvent.BIDS_REJECTED)
        # A stale delivery to the first process' watcher changes nothing
        await ledger.emit("loan-1", LoanEvent.BIDS_REJECTED, redeliver=True)

        assert second.portfolio.require("loan-1").state is InvestmentState.REJECTED
        assert len(ledger.calls_for("withdraw_investment")) == 1
        assert errors == []

    @pytest.mark.asyncio
    async def test_restored_review_rejected_twice_withdraws_once(
        self, ledger, engine, store, snapshot_path, errors
    ):
        ledger.add_loan("loan-1", state=InvestmentState.REVIEW)
        write_snapshot(snapshot_path, make_investment("loan-1", state=InvestmentState.REVIEW))
        investor = Investor(ledger, engine, store)
        await investor.start(errors.append)

        await ledger.emit("loan-1", LoanEvent.BIDS_REJECTED)
        await ledger.emit("loan-1", LoanEvent.BIDS_REJECTED, redeliver=True)
        await ledger.emit("loan-1", LoanEvent.BIDS_REJECTED)

        investment = investor.portfolio.require("loan-1")
        assert investment.state is InvestmentState.REJECTED
        assert investment.refund_withdrawn is True
        assert len(ledger.calls_for("withdraw_investment")) == 1
        assert read_snapshot(snapshot_path)["loan-1"]["refund_withdrawn"] is True

    @pytest.mark.asyncio
    async def test_failed_withdrawal_leaves_other_investments(
        self, investor, ledger, snapshot_path, errors
    ):
        await investor.start(errors.append)
        await ledger.create_loan("loan-1")
        await ledger.create_loan("loan-2")
        ledger.set_balance("loan-2", BIDDER, 100)
        await ledger.emit("loan-2", LoanEvent.TERM_BEGIN)
        ledger.fail("loan-1", "withdraw_investment")

        await ledger.emit("loan-1", LoanEvent.BIDS_REJECTED)

        assert isinstance(errors[0], LedgerCallFailed)
        saved = read_snapshot(snapshot_path)
        assert saved["loan-1"]["state"] == "auction"
        assert "refund_withdrawn" not in saved["loan-1"]
        assert saved["loan-2"]["state"] == "accepted"
        assert investor.portfolio.require("loan-1").refund_withdrawn is False

    @pytest.mark.asyncio
    async def test_missed_rejection_settled_on_start(self, ledger, engine, store, snapshot_path, errors):
        ledger.add_loan("loan-1", state=InvestmentState.REJECTED)
        write_snapshot(snapshot_path, make_investment("loan-1", state=InvestmentState.REVIEW))

        investor = Investor(ledger, engine, store)
        await investor.start(errors.append)

        investment = investor.portfolio.require("loan-1")
        assert investment.state is InvestmentState.REJECTED
        assert investment.refund_withdrawn is True
        assert len(ledger.calls_for("withdraw_investment")) == 1
        assert read_snapshot(snapshot_path)["loan-1"]["refund_withdrawn"] is True

        await investor.stop()
        again = Investor(ledger, engine, store)
        await again.start(errors.append)

        assert len(ledger.calls_for("withdraw_investment")) == 1
        assert errors == []

    @pytest.mark.asyncio
    async def test_underfunded_acceptance_settled_on_start(self, ledger, engine, store, snapshot_path, errors):
        ledger.add_loan("loan-1", state=InvestmentState.ACCEPTED)
        ledger.set_balance("loan-1", BIDDER, 40)
        write_snapshot(snapshot_path, make_investment("loan-1", state=InvestmentState.REVIEW))

        investor = Investor(ledger, engine, store)
        await investor.start(errors.append)

        investment = investor.portfolio.require("loan-1")
        assert investment.state is InvestmentState.ACCEPTED
        assert investment.refund_withdrawn is True
        assert len(ledger.calls_for("withdraw_investment")) == 1

    @pytest.mark.asyncio
    async def test_restart_failure_reported_not_raised(self, ledger, engine, store, snapshot_path, errors):
        ledger.add_loan("loan-1", state=InvestmentState.REJECTED)
        ledger.add_loan("loan-2", state=InvestmentState.AUCTION)
        ledger.fail("loan-1", "withdraw_investment")
        write_snapshot(
            snapshot_path,
            make_investment("loan-1", state=InvestmentState.REVIEW),
            make_investment("loan-2"),
        )

        investor = Investor(ledger, engine, store)
        await investor.start(errors.append)

        assert investor.is_running()
        assert isinstance(errors[0], LedgerCallFailed)
        assert investor.portfolio.require("loan-1").refund_withdrawn is False
        assert investor.lifecycle.watching("loan-2") == set(LoanEvent)

    @pytest.mark.asyncio
    async def test_unresolvable_loan_does_not_block_start(self, ledger, engine, store, snapshot_path, errors):
        ledger.add_loan("loan-2", state=InvestmentState.AUCTION)
        write_snapshot(
            snapshot_path,
            make_investment("gone", state=InvestmentState.REVIEW),
            make_investment("loan-2"),
        )

        investor = Investor(ledger, engine, store)
        await investor.start(errors.append)

        assert investor.is_running()
        assert [(exc.operation, exc.loan_id) for exc in errors] == [("get_loan", "gone")]
        assert investor.lifecycle.watching("gone") == set()
        assert investor.lifecycle.watching("loan-2") == set(LoanEvent)

        # Kept in the snapshot so a later start can try again
        await ledger.emit("loan-2", LoanEvent.BIDS_REJECTED)
        assert set(read_snapshot(snapshot_path)) == {"gone", "loan-2"}

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_aborts_start(self, investor, snapshot_path, errors):
        snapshot_path.write_text("{not json")

        with pytest.raises(StoreCorrupt):
            await investor.start(errors.append)
        assert not investor.is_running()

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, investor, errors):
        await investor.start(errors.append)

        with pytest.raises(RuntimeError, match="already started"):
            await investor.start(errors.append)


class TestCollect:

    @pytest.mark.asyncio
    async def test_collect_redeems_for_bidder(self, investor, ledger, metrics, errors):
        await investor.start(errors.append)
        await ledger.create_loan("loan-1")
        ledger.set_balance("loan-1", BIDDER, 100)
        await ledger.emit("loan-1", LoanEvent.TERM_BEGIN)

        await investor.collect("loan-1")

        assert [call.args for call in ledger.calls_for("redeem_value", "loan-1")] == [(BIDDER,)]
        assert metrics.snapshot()["redemptions"] == 1

    @pytest.mark.asyncio
    async def test_collect_unknown_loan(self, investor, ledger, errors):
        await investor.start(errors.append)

        with pytest.raises(UnknownInvestment):
            await investor.collect("ghost")
        assert ledger.calls_for("redeem_value") == []

    @pytest.mark.asyncio
    async def test_collect_before_start_loads_snapshot(self, investor, ledger, snapshot_path):
        ledger.add_loan("loan-1", state=InvestmentState.ACCEPTED)
        write_snapshot(snapshot_path, make_investment("loan-1", state=InvestmentState.ACCEPTED, balance=100))

        await investor.collect("loan-1")

        assert len(ledger.calls_for("redeem_value", "loan-1")) == 1
        assert not investor.is_running()

    @pytest.mark.asyncio
    async def test_collect_failure_wrapped(self, investor, ledger, errors):
        await investor.start(errors.append)
        await ledger.create_loan("loan-1")
        ledger.fail("loan-1", "redeem_value")

        with pytest.raises(LedgerCallFailed) as excinfo:
            await investor.collect("loan-1")
        assert excinfo.value.operation == "redeem_value"


class TestStop:

    @pytest.mark.asyncio
    async def test_stop_cancels_every_subscription(self, investor, ledger, errors):
        await investor.start(errors.append)
        await ledger.create_loan("loan-1")
        await ledger.create_loan("loan-2")
        assert ledger.active_subscriptions() > 0

        await investor.stop()

        assert ledger.active_subscriptions() == 0
        assert not investor.is_running()

        # Nothing is listening any more
        await ledger.create_loan("loan-3")
        assert "loan-3" not in investor.portfolio

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, investor, errors):
        await investor.stop()
        await investor.start(errors.append)
        await investor.stop()
        await investor.stop()

        assert not investor.is_running()

    @pytest.mark.asyncio
    async def test_stop_during_decision_arms_nothing(self, ledger, store, errors):
        engine = GatedEngine(PROPOSAL)
        investor = Investor(ledger, engine, store)
        await investor.start(errors.append)

        creation = asyncio.ensure_future(ledger.create_loan("loan-1"))
        while not engine.waiting:
            await asyncio.sleep(0)

        await investor.stop()
        engine.gate.set()
        await creation

        assert ledger.calls_for("bid") == []
        assert "loan-1" not in investor.portfolio
        assert ledger.active_subscriptions() == 0
        assert errors == []

    @pytest.mark.asyncio
    async def test_stop_during_bid_keeps_investment_unwatched(self, investor, ledger, store, errors, snapshot_path):
        await investor.start(errors.append)
        ledger.add_loan("loan-1")
        loan = await ledger.get_loan("loan-1")
        real_bid = loan.bid

        async def bid_then_stop(*args):
            await real_bid(*args)
            await investor.stop()

        loan.bid = bid_then_stop
        await ledger.announce("loan-1")

        assert "loan-1" in investor.portfolio
        assert "loan-1" in read_snapshot(snapshot_path)
        assert ledger.active_subscriptions() == 0
        assert errors == []
