"""Shared constants, a fake processor and event builders for the payout tests."""

import json
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from payouts.processor import (
    PaymentProcessor,
    ProcessorAccount,
    ProcessorTransfer,
    WebhookVerificationError,
    to_minor_units,
)


# Test constants
REFERRER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_USER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
CONNECTED_ACCOUNT = "acct_referrer"
FAKE_SIGNATURE = "t=1,v1=fake"
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeProcessor(PaymentProcessor):
    """Records calls instead of talking to Stripe."""

    def __init__(self):
        self.accounts: dict[str, ProcessorAccount] = {}
        self.transfers: list[dict] = []
        self.links: list[dict] = []
        self.transfer_error: Optional[Exception] = None

    def create_account(self, email, country):
        account = ProcessorAccount(id=f"acct_{len(self.accounts) + 1}", country=country)
        self.accounts[account.id] = account
        return account

    def create_account_link(self, account_id, return_url, refresh_url):
        self.links.append({"account": account_id, "return_url": return_url, "refresh_url": refresh_url})
        return f"https://connect.example.com/setup/{account_id}"

    def get_account(self, account_id):
        return self.accounts[account_id]

    def create_transfer(self, amount, currency, destination, metadata, idempotency_key):
        if self.transfer_error is not None:
            raise self.transfer_error
        transfer = ProcessorTransfer(
            id=f"tr_{len(self.transfers) + 1}",
            amount=to_minor_units(amount),
            currency=currency,
            destination=destination,
            metadata=metadata,
            created=1704067200,
        )
        self.transfers.append({"transfer": transfer, "idempotency_key": idempotency_key})
        return transfer

    def verify_webhook(self, payload, signature):
        if signature != FAKE_SIGNATURE:
            raise WebhookVerificationError("No signatures found matching the expected signature")
        return json.loads(payload)


def transfer_event(kind, transfer_id, payout_request_id=None, status=None, failure_message=None, event_id="evt_1"):
    metadata = {}
    if payout_request_id is not None:
        metadata["payout_request_id"] = str(payout_request_id)
    obj = {"id": transfer_id, "object": "transfer", "amount": 4975, "created": 1704067200, "metadata": metadata}
    if status is not None:
        obj["status"] = status
    if failure_message is not None:
        obj["failure_message"] = failure_message
    return {"id": event_id, "type": kind, "data": {"object": obj}}


def account_event(account_id, details_submitted=True, charges_enabled=True, payouts_enabled=True, last4="6789"):
    return {
        "id": "evt_account",
        "type": "account.updated",
        "data": {"object": {
            "id": account_id,
            "object": "account",
            "details_submitted": details_submitted,
            "charges_enabled": charges_enabled,
            "payouts_enabled": payouts_enabled,
            "country": "US",
            "external_accounts": {"object": "list", "data": [{"last4": last4}]},
        }},
    }
