"""
Payment processor boundary.

The settlement engine, account registry and reconciler only talk to the
processor through ``PaymentProcessor``. ``StripeProcessor`` is the production
implementation on top of Stripe Connect; tests plug in a fake.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, Optional

import stripe
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class ProcessorError(Exception):
    pass


class ProcessorTimeoutError(ProcessorError):
    """The processor could not be reached or did not answer in time."""


class WebhookVerificationError(Exception):
    pass


class ProcessorAccount(BaseModel):
    id: str
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False
    country: Optional[str] = None
    bank_account_last4: Optional[str] = None

    @property
    def is_verified(self) -> bool:
        return self.details_submitted and self.charges_enabled and self.payouts_enabled

    @classmethod
    def from_payload(cls, obj: Mapping[str, Any]) -> "ProcessorAccount":
        external_accounts = obj.get("external_accounts") or {}
        accounts = external_accounts.get("data") or []
        last4 = accounts[0].get("last4") if accounts else None
        return cls(
            id=obj["id"],
            details_submitted=bool(obj.get("details_submitted")),
            charges_enabled=bool(obj.get("charges_enabled")),
            payouts_enabled=bool(obj.get("payouts_enabled")),
            country=obj.get("country"),
            bank_account_last4=last4,
        )


class ProcessorTransfer(BaseModel):
    id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    destination: Optional[str] = None
    status: Optional[str] = None
    failure_message: Optional[str] = None
    created: Optional[int] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, obj: Mapping[str, Any]) -> "ProcessorTransfer":
        metadata = obj.get("metadata") or {}
        return cls(
            id=obj["id"],
            amount=obj.get("amount"),
            currency=obj.get("currency"),
            destination=obj.get("destination"),
            status=obj.get("status"),
            failure_message=obj.get("failure_message"),
            created=obj.get("created"),
            metadata={str(k): str(v) for k, v in metadata.items()},
        )


def to_minor_units(amount: Decimal) -> int:
    return int((amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


class PaymentProcessor(ABC):
    @abstractmethod
    def create_account(self, email: Optional[str], country: str) -> ProcessorAccount: ...

    @abstractmethod
    def create_account_link(self, account_id: str, return_url: str, refresh_url: str) -> str:
        """Returns the hosted onboarding URL."""

    @abstractmethod
    def get_account(self, account_id: str) -> ProcessorAccount: ...

    @abstractmethod
    def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ProcessorTransfer: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> dict:
        """Checks ``signature`` over the raw ``payload`` and returns the decoded event."""


class StripeProcessor(PaymentProcessor):
    def __init__(self, api_key: str, webhook_secret: str, timeout: float = 30, tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.tolerance = tolerance
        self._client: Optional[stripe.StripeClient] = None

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            if not self.api_key:
                raise ProcessorError("Stripe secret key not configured")
            self._client = stripe.StripeClient(
                self.api_key,
                http_client=stripe.RequestsClient(timeout=self.timeout),
            )
        return self._client

    def create_account(self, email: Optional[str], country: str) -> ProcessorAccount:
        params: dict[str, Any] = {
            "type": "express",
            "country": country,
            "capabilities": {"transfers": {"requested": True}},
        }
        if email:
            params["email"] = email
        with _translate_errors("account create"):
            account = self.client.accounts.create(params=params)
        return ProcessorAccount.from_payload(account)

    def create_account_link(self, account_id: str, return_url: str, refresh_url: str) -> str:
        with _translate_errors("account link"):
            link = self.client.account_links.create(params={
                "account": account_id,
                "return_url": return_url,
                "refresh_url": refresh_url,
                "type": "account_onboarding",
            })
        return link.url

    def get_account(self, account_id: str) -> ProcessorAccount:
        with _translate_errors("account retrieve"):
            account = self.client.accounts.retrieve(account_id)
        return ProcessorAccount.from_payload(account)

    def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ProcessorTransfer:
        with _translate_errors("transfer create"):
            transfer = self.client.transfers.create(
                params={
                    "amount": to_minor_units(amount),
                    "currency": currency,
                    "destination": destination,
                    "metadata": metadata,
                },
                options={"idempotency_key": idempotency_key},
            )
        return ProcessorTransfer.from_payload(transfer)

    def verify_webhook(self, payload: bytes, signature: str) -> dict:
        if not self.webhook_secret:
            raise WebhookVerificationError("Webhook secret not configured")
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret, self.tolerance)
            return json.loads(text)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(str(e)) from e
        except (UnicodeDecodeError, ValueError) as e:
            raise WebhookVerificationError(f"Malformed payload: {e}") from e


@contextmanager
def _translate_errors(operation: str):
    """Turns Stripe SDK exceptions into processor errors."""
    try:
        yield
    except stripe.APIConnectionError as e:
        logger.error("Stripe %s did not complete: %s", operation, e)
        raise ProcessorTimeoutError(e.user_message or str(e)) from e
    except stripe.StripeError as e:
        logger.error("Stripe %s failed: %s", operation, e)
        raise ProcessorError(e.user_message or str(e)) from e
