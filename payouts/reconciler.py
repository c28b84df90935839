"""
Webhook reconciliation.

Applies processor events to local payout state. Handlers compute the desired
end state from the event alone, so redelivered or out-of-order events are
harmless: terminal payouts never change status again, and no earning log is
ever left attached to a ``failed`` or ``cancelled`` payout.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .accounts import AccountNotFoundError, PayoutAccountRegistry
from .events import (
    AccountUpdated,
    ProcessorEvent,
    TransferCreated,
    TransferFailed,
    TransferUpdated,
    UnknownEvent,
)
from .models import PayoutRequest, PayoutStatus, utcnow
from .service import select_earnings
from .storage import LedgerStore

logger = logging.getLogger(__name__)

TRANSFER_STATUS_MAP = {
    "paid": PayoutStatus.COMPLETED,
    "failed": PayoutStatus.FAILED,
    "canceled": PayoutStatus.CANCELLED,
}

DEFAULT_FAILURE_REASON = "Transfer failed"


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    IGNORED = "ignored"


class WebhookReconciler:
    def __init__(self, store: LedgerStore, accounts: PayoutAccountRegistry):
        self.store = store
        self.accounts = accounts

    def handle(self, event: ProcessorEvent) -> ReconcileOutcome:
        logger.info("Processing payout webhook event %s (%s)", event.id, event.kind)
        if isinstance(event, TransferCreated):
            return self.transfer_created(event)
        if isinstance(event, TransferUpdated):
            target = TRANSFER_STATUS_MAP.get(event.transfer.status or "", PayoutStatus.PROCESSING)
            return self._apply_transfer(event, target)
        if isinstance(event, TransferFailed):
            return self._apply_transfer(event, PayoutStatus.FAILED)
        if isinstance(event, AccountUpdated):
            return self.account_updated(event)
        if isinstance(event, UnknownEvent):
            logger.info("Unhandled payout event type: %s", event.kind)
        return ReconcileOutcome.IGNORED

    def transfer_created(self, event: TransferCreated) -> ReconcileOutcome:
        payout = self._find_payout(event)
        if payout is None:
            return ReconcileOutcome.IGNORED

        with self.store.lock_user(payout.user_id):
            payout = self.store.get_payout_request(payout.id)
            if payout.status != PayoutStatus.PENDING:
                if payout.status.releases_earnings:
                    logger.warning(
                        "Transfer %s created for %s payout %s; needs manual review",
                        event.transfer.id, payout.status.value, payout.id,
                    )
                    self._release_dead_payout(payout)
                return ReconcileOutcome.NOOP

            # Still pending means the transfer went out but settlement never
            # recorded it, so the earning logs are attached here instead.
            payout.status = PayoutStatus.PROCESSING
            payout.external_transfer_id = event.transfer.id
            payout.processed_at = _timestamp(event.transfer.created)
            selected = select_earnings(
                self.store.list_unpaid_earnings(payout.user_id), payout.amount_requested
            )
            attached = self.store.settle_payout(payout, [log.id for log in selected])
            logger.info(
                "Updated payout request %s to processing; attached %d earning logs", payout.id, attached
            )
            return ReconcileOutcome.APPLIED

    def _apply_transfer(self, event, target: PayoutStatus) -> ReconcileOutcome:
        payout = self._find_payout(event)
        if payout is None:
            return ReconcileOutcome.IGNORED

        with self.store.lock_user(payout.user_id):
            payout = self.store.get_payout_request(payout.id)
            if not payout.can_transition_to(target):
                if payout.status.is_terminal and payout.status != target:
                    logger.warning(
                        "Ignoring %s for payout %s already %s",
                        event.kind, payout.id, payout.status.value,
                    )
                if payout.status.releases_earnings:
                    self._release_dead_payout(payout)
                return ReconcileOutcome.NOOP

            payout.status = target
            payout.external_transfer_id = payout.external_transfer_id or event.transfer.id
            payout.processed_at = utcnow()
            if target.releases_earnings:
                payout.failure_reason = event.transfer.failure_message or DEFAULT_FAILURE_REASON
                released = self.store.close_payout(payout)
                logger.info(
                    "Updated payout request %s to %s; released %d earning logs",
                    payout.id, target.value, released,
                )
                return ReconcileOutcome.APPLIED

            if event.transfer.failure_message:
                payout.failure_reason = event.transfer.failure_message
            self.store.update_payout_request(payout)
            logger.info("Updated payout request %s to %s", payout.id, target.value)
            return ReconcileOutcome.APPLIED

    def _release_dead_payout(self, payout: PayoutRequest) -> None:
        # No log may stay attached to a failed or cancelled payout, even when
        # an earlier delivery recorded the status but not the release.
        released = self.store.release_earnings(payout.id)
        if released:
            logger.warning("Released %d earning logs left on %s payout %s", released, payout.status.value, payout.id)

    def account_updated(self, event: AccountUpdated) -> ReconcileOutcome:
        try:
            self.accounts.sync_external_account(event.account)
        except AccountNotFoundError:
            logger.warning("No user found for external account %s", event.account.id)
            return ReconcileOutcome.IGNORED
        return ReconcileOutcome.APPLIED

    def _find_payout(self, event) -> Optional[PayoutRequest]:
        payout_request_id = event.payout_request_id
        if payout_request_id is None:
            logger.warning("No payout request id in metadata of transfer %s", event.transfer.id)
            return None

        payout = self.store.get_payout_request(payout_request_id)
        if payout is None:
            logger.warning("Transfer %s references unknown payout %s", event.transfer.id, payout_request_id)
            return None
        if payout.external_transfer_id and payout.external_transfer_id != event.transfer.id:
            logger.warning(
                "Transfer %s does not match transfer %s recorded for payout %s",
                event.transfer.id, payout.external_transfer_id, payout.id,
            )
            return None
        return payout


def _timestamp(epoch: Optional[int]) -> datetime:
    if epoch is None:
        return utcnow()
    return datetime.fromtimestamp(epoch, tz=timezone.utc)
