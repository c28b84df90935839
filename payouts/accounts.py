import logging
from typing import Optional
from uuid import UUID

from .config import Settings
from .models import (
    AccountStatus,
    OnboardingLink,
    PayoutAccount,
    PayoutAccountStatus,
    utcnow,
)
from .processor import PaymentProcessor, ProcessorAccount
from .service import PayoutServiceError
from .storage import LedgerStore

logger = logging.getLogger(__name__)


class AccountNotFoundError(PayoutServiceError):
    pass


def apply_external_state(account: PayoutAccount, external: ProcessorAccount) -> PayoutAccount:
    """Recompute enablement from the processor's view of the account."""
    verified = external.is_verified
    return account.model_copy(update={
        "status": AccountStatus.VERIFIED if verified else AccountStatus.PENDING,
        "payout_enabled": verified,
        "bank_account_last4": external.bank_account_last4,
        "bank_account_country": external.country,
        "updated_at": utcnow(),
    })


class PayoutAccountRegistry:
    def __init__(self, store: LedgerStore, processor: PaymentProcessor, settings: Settings):
        self.store = store
        self.processor = processor
        self.country = settings.CONNECT_ACCOUNT_COUNTRY
        self.default_return_url = settings.ONBOARDING_RETURN_URL
        self.default_refresh_url = settings.ONBOARDING_REFRESH_URL

    def onboard(
        self,
        user_id: UUID,
        email: Optional[str] = None,
        return_url: Optional[str] = None,
        refresh_url: Optional[str] = None,
    ) -> OnboardingLink:
        with self.store.lock_user(user_id):
            account = self.store.get_payout_account(user_id)
            if account is None:
                external = self.processor.create_account(email=email, country=self.country)
                account = self.store.save_payout_account(PayoutAccount(
                    user_id=user_id,
                    external_account_id=external.id,
                ))
                logger.info("Created payout account %s for user %s", external.id, user_id)

        url = self.processor.create_account_link(
            account.external_account_id,
            return_url=return_url or self.default_return_url,
            refresh_url=refresh_url or self.default_refresh_url,
        )
        return OnboardingLink(account_id=account.external_account_id, onboarding_url=url)

    def refresh_status(self, user_id: UUID) -> PayoutAccountStatus:
        account = self.store.get_payout_account(user_id)
        if account is None:
            return PayoutAccountStatus(account_exists=False, payout_enabled=False)

        external = self.processor.get_account(account.external_account_id)
        account = self.store.save_payout_account(apply_external_state(account, external))
        logger.info(
            "Refreshed payout account %s for user %s, enabled: %s",
            account.external_account_id, user_id, account.payout_enabled,
        )
        return PayoutAccountStatus(
            account_exists=True,
            account_status=account.status,
            payout_enabled=account.payout_enabled,
            bank_account_last4=account.bank_account_last4,
            bank_account_country=account.bank_account_country,
            charges_enabled=external.charges_enabled,
            payouts_enabled=external.payouts_enabled,
            details_submitted=external.details_submitted,
        )

    def sync_external_account(self, external: ProcessorAccount) -> PayoutAccount:
        account = self.store.find_payout_account(external.id)
        if account is None:
            raise AccountNotFoundError(f"No payout account for external account {external.id}")
        account = self.store.save_payout_account(apply_external_state(account, external))
        logger.info(
            "Updated payout account for user %s, verified: %s", account.user_id, account.payout_enabled
        )
        return account
