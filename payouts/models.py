from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PayoutStatus.COMPLETED, PayoutStatus.FAILED, PayoutStatus.CANCELLED)

    @property
    def releases_earnings(self) -> bool:
        return self in (PayoutStatus.FAILED, PayoutStatus.CANCELLED)


class AccountStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"


class RejectionReason(str, Enum):
    INVALID_AMOUNT = "invalid_amount"
    AMOUNT_TOO_SMALL = "amount_too_small"
    BELOW_MINIMUM = "below_minimum"
    INSUFFICIENT_EARNINGS = "insufficient_earnings"
    ACCOUNT_NOT_VERIFIED = "account_not_verified"


class EarningLog(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    referrer_id: UUID
    amount_earned: Decimal = Field(..., gt=0)
    occurred_at: datetime = Field(default_factory=utcnow)
    is_paid_out: bool = False
    payout_request_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class PayoutAccount(BaseModel):
    user_id: UUID
    external_account_id: str
    status: AccountStatus = AccountStatus.PENDING
    payout_enabled: bool = False
    bank_account_last4: Optional[str] = None
    bank_account_country: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class PayoutRequest(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    amount_requested: Decimal
    amount_fee: Decimal
    amount_net: Decimal
    status: PayoutStatus = PayoutStatus.PENDING
    external_transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_transition_to(self, status: PayoutStatus) -> bool:
        if self.status.is_terminal:
            return False
        if self.status == PayoutStatus.PROCESSING and status == PayoutStatus.PENDING:
            return False
        return self.status != status


class PayoutValidation(BaseModel):
    valid: bool
    available_earnings: Decimal
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None


class EarningsSummary(BaseModel):
    user_id: UUID
    available_earnings: Decimal
    earmarked_earnings: Decimal
    lifetime_earnings: Decimal
    unpaid_count: int


class CreatePayoutRequest(BaseModel):
    amount: Decimal = Field(..., decimal_places=2, description="Amount to withdraw, before the transfer fee")

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": "50.00"}
    })


class PayoutResponse(BaseModel):
    payout_request_id: UUID
    amount_requested: Decimal
    amount_fee: Decimal
    amount_net: Decimal
    status: PayoutStatus
    transfer_id: Optional[str] = None

    @classmethod
    def from_request(cls, payout: PayoutRequest) -> "PayoutResponse":
        return cls(
            payout_request_id=payout.id,
            amount_requested=payout.amount_requested,
            amount_fee=payout.amount_fee,
            amount_net=payout.amount_net,
            status=payout.status,
            transfer_id=payout.external_transfer_id,
        )


class OnboardRequest(BaseModel):
    return_url: Optional[str] = None
    refresh_url: Optional[str] = None


class OnboardingLink(BaseModel):
    account_id: str
    onboarding_url: str


class PayoutAccountStatus(BaseModel):
    account_exists: bool
    account_status: Optional[AccountStatus] = None
    payout_enabled: bool = False
    bank_account_last4: Optional[str] = None
    bank_account_country: Optional[str] = None
    charges_enabled: Optional[bool] = None
    payouts_enabled: Optional[bool] = None
    details_submitted: Optional[bool] = None
