"""
Unit Tests for the Settlement Engine

Tests cover:
1. Happy path: pending intent, transfer, processing, ledger attachment
2. Oldest-first whole-log allocation
3. Rejections write nothing
4. Processor failures are recorded synchronously
5. Concurrent withdrawals for one user
6. Transfers sent but not yet recorded
"""

import logging
import threading
from decimal import Decimal

import pytest

from payouts.events import parse_event
from payouts.models import EarningLog, PayoutStatus, RejectionReason
from payouts.processor import ProcessorError, ProcessorTimeoutError
from payouts.reconciler import ReconcileOutcome
from payouts.service import (
    PayoutNotFoundError,
    PayoutProcessingError,
    PayoutRejectedError,
    select_earnings,
)
from payouts.tests.helpers import CONNECTED_ACCOUNT, OTHER_USER_ID, REFERRER_ID, transfer_event


class TestCreatePayout:
    """Tests for the successful settlement flow."""

    def test_create_payout_success(self, store, processor, settlement, earn, verified_account):
        """Test a payout moving from pending to processing with a transfer."""
        earn("40.00", "30.00", "10.00")

        payout = settlement.create_payout(REFERRER_ID, Decimal("50.00"))

        assert payout.status == PayoutStatus.PROCESSING
        assert payout.amount_requested == Decimal("50.00")
        assert payout.amount_fee == Decimal("0.25")
        assert payout.amount_net == Decimal("49.75")
        assert payout.external_transfer_id == "tr_1"
        assert payout.processed_at is not None

        stored = store.get_payout_request(payout.id)
        assert stored.status == PayoutStatus.PROCESSING
        assert stored.external_transfer_id == "tr_1"

    def test_transfer_carries_net_amount_and_payout_tag(self, processor, settlement, earn, verified_account):
        """Test that the transfer sends the net amount tagged with the payout id."""
        earn("100.00")

        payout = settlement.create_payout(REFERRER_ID, Decimal("50.00"))

        call = processor.transfers[0]
        transfer = call["transfer"]
        assert transfer.amount == 4975
        assert transfer.destination == CONNECTED_ACCOUNT
        assert transfer.metadata["payout_request_id"] == str(payout.id)
        assert transfer.metadata["type"] == "referral_commission"
        assert call["idempotency_key"] == str(payout.id)

    def test_attaches_oldest_logs_not_exceeding_request(self, store, settlement, earn, verified_account):
        """Test that 40/30/10 with a request of 50 earmarks only the 40."""
        oldest, middle, newest = earn("40.00", "30.00", "10.00")

        payout = settlement.create_payout(REFERRER_ID, Decimal("50.00"))

        logs = {log.id: log for log in store.list_earnings(REFERRER_ID)}
        assert logs[oldest.id].is_paid_out
        assert logs[oldest.id].payout_request_id == payout.id
        assert not logs[middle.id].is_paid_out
        assert not logs[newest.id].is_paid_out
        assert store.available_earnings(REFERRER_ID) == Decimal("40.00")

    def test_attaches_all_logs_for_exact_amount(self, store, settlement, earn, verified_account):
        """Test that an exact request earmarks every log."""
        earn("40.00", "30.00", "10.00")

        payout = settlement.create_payout(REFERRER_ID, Decimal("80.00"))

        assert store.available_earnings(REFERRER_ID) == Decimal("0.00")
        assert all(log.payout_request_id == payout.id for log in store.list_earnings(REFERRER_ID))


class TestSelectEarnings:
    """Tests for the allocation helper."""

    def _logs(self, *amounts):
        return [EarningLog(referrer_id=REFERRER_ID, amount_earned=Decimal(a)) for a in amounts]

    def test_stops_at_first_log_that_would_exceed(self):
        """Test that allocation stops at the first log that does not fit."""
        logs = self._logs("40.00", "30.00", "10.00")

        selected = select_earnings(logs, Decimal("50.00"))

        assert selected == logs[:1]

    def test_never_splits_a_log(self):
        """Test that a single larger log is never split."""
        logs = self._logs("60.00")

        assert select_earnings(logs, Decimal("50.00")) == []


class TestRejectedPayouts:
    """Rejected requests leave no trace in the ledger."""

    def test_fee_floor_creates_no_request(self, store, processor, settlement, earn, verified_account):
        """Test that an amount at the fee writes nothing."""
        earn("50.00")

        with pytest.raises(PayoutRejectedError) as exc_info:
            settlement.create_payout(REFERRER_ID, Decimal("0.25"))

        assert exc_info.value.validation.reason == RejectionReason.AMOUNT_TOO_SMALL
        assert store.list_payout_requests(REFERRER_ID) == []
        assert processor.transfers == []

    def test_over_withdrawal_rejected(self, store, processor, settlement, earn, verified_account):
        """Test that over-withdrawal writes nothing and sends nothing."""
        earn("30.00")

        with pytest.raises(PayoutRejectedError) as exc_info:
            settlement.create_payout(REFERRER_ID, Decimal("30.01"))

        assert exc_info.value.validation.reason == RejectionReason.INSUFFICIENT_EARNINGS
        assert exc_info.value.validation.available_earnings == Decimal("30.00")
        assert store.list_payout_requests(REFERRER_ID) == []
        assert processor.transfers == []

    def test_unverified_account_rejected(self, store, settlement, accounts, processor, earn):
        """Test that an account missing payouts capability is rejected."""
        earn("50.00")
        accounts.onboard(REFERRER_ID)
        account_id = store.get_payout_account(REFERRER_ID).external_account_id
        processor.accounts[account_id] = processor.accounts[account_id].model_copy(update={
            "details_submitted": True, "charges_enabled": True, "payouts_enabled": False,
        })
        accounts.refresh_status(REFERRER_ID)

        with pytest.raises(PayoutRejectedError) as exc_info:
            settlement.create_payout(REFERRER_ID, Decimal("50.00"))

        assert exc_info.value.validation.reason == RejectionReason.ACCOUNT_NOT_VERIFIED
        assert store.get_payout_account(REFERRER_ID).payout_enabled is False


class TestProcessorFailure:
    """Transfer-create failures are recorded before returning."""

    def test_timeout_marks_request_failed(self, store, processor, settlement, earn, verified_account):
        """Test that a timeout fails the request with nothing attached."""
        earn("40.00", "30.00", "10.00")
        processor.transfer_error = ProcessorTimeoutError("Request timed out")

        with pytest.raises(PayoutProcessingError) as exc_info:
            settlement.create_payout(REFERRER_ID, Decimal("50.00"))

        payout = store.get_payout_request(exc_info.value.payout.id)
        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_reason == "Request timed out"
        assert payout.external_transfer_id is None
        assert all(not log.is_paid_out for log in store.list_earnings(REFERRER_ID))
        assert store.available_earnings(REFERRER_ID) == Decimal("80.00")

    def test_processor_error_message_preserved(self, store, processor, settlement, earn, verified_account):
        """Test that the processor's message becomes the failure reason."""
        earn("100.00")
        processor.transfer_error = ProcessorError("Insufficient funds in platform balance")

        with pytest.raises(PayoutProcessingError):
            settlement.create_payout(REFERRER_ID, Decimal("25.00"))

        [payout] = store.list_payout_requests(REFERRER_ID)
        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_reason == "Insufficient funds in platform balance"


class TestUnsettledTransfer:
    """A transfer that went out but could not be recorded locally."""

    def test_settle_failure_is_logged_and_finished_by_webhook(
        self, store, processor, settlement, reconciler, earn, verified_account, monkeypatch, caplog
    ):
        """Test that a failed settle is logged and transfer.created earmarks the logs."""
        earn("40.00", "30.00", "10.00")

        def unavailable(payout, earning_ids):
            raise TimeoutError("QueuePool limit reached")

        monkeypatch.setattr(store, "settle_payout", unavailable)
        with caplog.at_level(logging.ERROR, logger="payouts.service"):
            with pytest.raises(TimeoutError):
                settlement.create_payout(REFERRER_ID, Decimal("80.00"))
        monkeypatch.undo()

        [payout] = store.list_payout_requests(REFERRER_ID)
        assert payout.status == PayoutStatus.PENDING
        assert len(processor.transfers) == 1
        errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
        assert any(str(payout.id) in message and "tr_1" in message for message in errors)

        outcome = reconciler.handle(parse_event(transfer_event("transfer.created", "tr_1", payout.id)))

        stored = store.get_payout_request(payout.id)
        assert outcome == ReconcileOutcome.APPLIED
        assert stored.status == PayoutStatus.PROCESSING
        assert stored.external_transfer_id == "tr_1"
        assert store.available_earnings(REFERRER_ID) == Decimal("0.00")
        assert all(log.payout_request_id == payout.id for log in store.list_earnings(REFERRER_ID))


class TestConcurrentPayouts:
    """Two withdrawals racing for the same balance."""

    def test_only_one_succeeds(self, store, processor, settlement, earn, verified_account):
        """Test that two racing withdrawals of the full balance pay out once."""
        earn("30.00", "30.00")
        barrier = threading.Barrier(2)
        results = []

        def withdraw():
            barrier.wait()
            try:
                results.append(settlement.create_payout(REFERRER_ID, Decimal("60.00")))
            except PayoutRejectedError as e:
                results.append(e)

        threads = [threading.Thread(target=withdraw) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, PayoutRejectedError)]
        assert len(succeeded) == 1
        assert len(rejected) == 1
        assert len(processor.transfers) == 1
        assert {log.payout_request_id for log in store.list_earnings(REFERRER_ID)} == {succeeded[0].id}


class TestPayoutQueries:
    """Tests for read operations."""

    def test_list_and_get_payouts(self, settlement, earn, verified_account):
        """Test listing and fetching a user's payouts."""
        earn("100.00")
        first = settlement.create_payout(REFERRER_ID, Decimal("25.00"))
        second = settlement.create_payout(REFERRER_ID, Decimal("25.00"))

        payouts = settlement.list_payouts(REFERRER_ID)

        assert {p.id for p in payouts} == {first.id, second.id}
        assert settlement.get_payout(REFERRER_ID, first.id).id == first.id

    def test_get_payout_of_other_user_fails(self, settlement, earn, verified_account):
        """Test that another user's payout is not found."""
        earn("100.00")
        payout = settlement.create_payout(REFERRER_ID, Decimal("25.00"))

        with pytest.raises(PayoutNotFoundError):
            settlement.get_payout(OTHER_USER_ID, payout.id)

    def test_earnings_summary(self, settlement, earn, verified_account):
        """Test available, earmarked and lifetime totals."""
        earn("40.00", "30.00", "10.00")
        settlement.create_payout(REFERRER_ID, Decimal("50.00"))

        summary = settlement.earnings_summary(REFERRER_ID)

        assert summary.available_earnings == Decimal("40.00")
        assert summary.earmarked_earnings == Decimal("40.00")
        assert summary.lifetime_earnings == Decimal("80.00")
        assert summary.unpaid_count == 2
