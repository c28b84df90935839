import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .config import Settings
from .models import (
    EarningLog,
    EarningsSummary,
    PayoutRequest,
    PayoutStatus,
    PayoutValidation,
    RejectionReason,
    utcnow,
)
from .processor import PaymentProcessor, ProcessorError
from .storage import LedgerStore

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class PayoutServiceError(Exception):
    pass


class PayoutRejectedError(PayoutServiceError):
    def __init__(self, validation: PayoutValidation):
        super().__init__(validation.message)
        self.validation = validation


class PayoutProcessingError(PayoutServiceError):
    def __init__(self, payout: PayoutRequest):
        super().__init__(payout.failure_reason or "Failed to process payout")
        self.payout = payout


class PayoutNotFoundError(PayoutServiceError):
    pass


class PayoutValidator:
    def __init__(self, store: LedgerStore, settings: Settings):
        self.store = store
        self.transfer_fee = settings.PAYOUT_TRANSFER_FEE
        self.minimum_amount = settings.MINIMUM_PAYOUT_AMOUNT

    def validate(self, user_id: UUID, amount: Decimal) -> PayoutValidation:
        available = self.store.available_earnings(user_id)

        def reject(reason: RejectionReason, message: str) -> PayoutValidation:
            return PayoutValidation(
                valid=False, available_earnings=available, reason=reason, message=message
            )

        if amount <= 0:
            return reject(RejectionReason.INVALID_AMOUNT, "Invalid amount")
        if amount - self.transfer_fee <= 0:
            return reject(RejectionReason.AMOUNT_TOO_SMALL, "Amount too small to cover transfer fees")
        if amount < self.minimum_amount:
            return reject(
                RejectionReason.BELOW_MINIMUM,
                f"Minimum payout amount is {self.minimum_amount}",
            )
        if amount > available:
            return reject(
                RejectionReason.INSUFFICIENT_EARNINGS,
                f"Requested amount exceeds available earnings of {available}",
            )

        account = self.store.get_payout_account(user_id)
        if account is None or not account.payout_enabled:
            return reject(
                RejectionReason.ACCOUNT_NOT_VERIFIED,
                "Payout not enabled. Please complete account verification.",
            )

        return PayoutValidation(valid=True, available_earnings=available)


def select_earnings(unpaid: list[EarningLog], requested: Decimal) -> list[EarningLog]:
    """Oldest whole logs whose running total stays within ``requested``.

    Stops at the first log that would push the total past the requested
    amount; logs are never split.
    """
    selected = []
    total = ZERO
    for log in unpaid:
        if total + log.amount_earned > requested:
            break
        selected.append(log)
        total += log.amount_earned
    return selected


class SettlementEngine:
    def __init__(
        self,
        store: LedgerStore,
        processor: PaymentProcessor,
        settings: Settings,
        validator: Optional[PayoutValidator] = None,
    ):
        self.store = store
        self.processor = processor
        self.validator = validator or PayoutValidator(store, settings)
        self.transfer_fee = settings.PAYOUT_TRANSFER_FEE
        self.currency = settings.PAYOUT_CURRENCY

    def create_payout(self, user_id: UUID, amount: Decimal) -> PayoutRequest:
        with self.store.lock_user(user_id):
            validation = self.validator.validate(user_id, amount)
            if not validation.valid:
                logger.info(
                    "Rejected payout of %s for user %s: %s", amount, user_id, validation.reason.value
                )
                raise PayoutRejectedError(validation)

            account = self.store.get_payout_account(user_id)
            payout = self.store.insert_payout_request(PayoutRequest(
                user_id=user_id,
                amount_requested=amount,
                amount_fee=self.transfer_fee,
                amount_net=amount - self.transfer_fee,
            ))
            logger.info("Created pending payout %s for user %s (%s)", payout.id, user_id, amount)

            try:
                transfer = self.processor.create_transfer(
                    amount=payout.amount_net,
                    currency=self.currency,
                    destination=account.external_account_id,
                    metadata={
                        "payout_request_id": str(payout.id),
                        "user_id": str(user_id),
                        "type": "referral_commission",
                    },
                    idempotency_key=str(payout.id),
                )
            except ProcessorError as e:
                payout.status = PayoutStatus.FAILED
                payout.failure_reason = str(e) or e.__class__.__name__
                payout.processed_at = utcnow()
                self.store.update_payout_request(payout)
                logger.error("Transfer for payout %s failed: %s", payout.id, payout.failure_reason)
                raise PayoutProcessingError(payout) from e

            payout.external_transfer_id = transfer.id
            payout.status = PayoutStatus.PROCESSING
            payout.processed_at = utcnow()
            try:
                selected = select_earnings(self.store.list_unpaid_earnings(user_id), amount)
                attached = self.store.settle_payout(payout, [log.id for log in selected])
            except Exception:
                # The payout stays pending; transfer.created finishes settling it.
                logger.exception(
                    "Transfer %s sent but payout %s was not settled; needs reconciliation",
                    transfer.id, payout.id,
                )
                raise
            logger.info(
                "Transfer %s created for payout %s; attached %d earning logs",
                transfer.id, payout.id, attached,
            )
            return payout

    def list_payouts(self, user_id: UUID) -> list[PayoutRequest]:
        return self.store.list_payout_requests(user_id)

    def get_payout(self, user_id: UUID, payout_request_id: UUID) -> PayoutRequest:
        payout = self.store.get_payout_request(payout_request_id)
        if payout is None or payout.user_id != user_id:
            raise PayoutNotFoundError(f"Payout request {payout_request_id} not found")
        return payout

    def earnings_summary(self, user_id: UUID) -> EarningsSummary:
        logs = self.store.list_earnings(user_id)
        unpaid = [log for log in logs if not log.is_paid_out]
        available = sum((log.amount_earned for log in unpaid), ZERO)
        lifetime = sum((log.amount_earned for log in logs), ZERO)
        return EarningsSummary(
            user_id=user_id,
            available_earnings=available,
            earmarked_earnings=lifetime - available,
            lifetime_earnings=lifetime,
            unpaid_count=len(unpaid),
        )
