from datetime import timedelta
from decimal import Decimal

import pytest

from payouts.accounts import PayoutAccountRegistry
from payouts.config import Settings
from payouts.models import AccountStatus, EarningLog, PayoutAccount
from payouts.processor import ProcessorAccount
from payouts.reconciler import WebhookReconciler
from payouts.service import PayoutValidator, SettlementEngine
from payouts.storage import InMemoryStorage
from payouts.tests.helpers import CONNECTED_ACCOUNT, REFERRER_ID, START, FakeProcessor


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        STRIPE_SECRET_KEY="",
        STRIPE_PAYOUT_WEBHOOK_SECRET="whsec_test",
        DATABASE_URL=None,
        PAYOUT_TRANSFER_FEE=Decimal("0.25"),
        MINIMUM_PAYOUT_AMOUNT=Decimal("20.00"),
    )


@pytest.fixture
def store():
    return InMemoryStorage()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def validator(store, settings):
    return PayoutValidator(store, settings)


@pytest.fixture
def settlement(store, processor, settings):
    return SettlementEngine(store, processor, settings)


@pytest.fixture
def accounts(store, processor, settings):
    return PayoutAccountRegistry(store, processor, settings)


@pytest.fixture
def reconciler(store, accounts):
    return WebhookReconciler(store, accounts)


@pytest.fixture
def earn(store):
    """Adds earning logs for a user, each one day newer than the last."""
    counter = {"n": 0}

    def _earn(*amounts, user_id=REFERRER_ID):
        logs = []
        for amount in amounts:
            counter["n"] += 1
            logs.append(store.add_earning(EarningLog(
                referrer_id=user_id,
                amount_earned=Decimal(amount),
                occurred_at=START + timedelta(days=counter["n"]),
            )))
        return logs

    return _earn


@pytest.fixture
def verified_account(store, processor):
    processor.accounts[CONNECTED_ACCOUNT] = ProcessorAccount(
        id=CONNECTED_ACCOUNT,
        details_submitted=True,
        charges_enabled=True,
        payouts_enabled=True,
        country="US",
        bank_account_last4="6789",
    )
    return store.save_payout_account(PayoutAccount(
        user_id=REFERRER_ID,
        external_account_id=CONNECTED_ACCOUNT,
        status=AccountStatus.VERIFIED,
        payout_enabled=True,
    ))

