"""
Referral Commission Payouts

This module provides:
- Available-balance validation for withdrawal requests
- Settlement of payouts through processor transfers
- Payout account onboarding and verification state
- Idempotent reconciliation of processor webhooks
- In-memory and SQL ledger stores
"""

from .models import (
    AccountStatus,
    EarningLog,
    PayoutAccount,
    PayoutRequest,
    PayoutStatus,
    PayoutValidation,
    RejectionReason,
)
from .service import PayoutValidator, SettlementEngine
from .accounts import PayoutAccountRegistry
from .reconciler import WebhookReconciler
from .storage import InMemoryStorage, LedgerStore

__all__ = [
    "AccountStatus",
    "EarningLog",
    "PayoutAccount",
    "PayoutRequest",
    "PayoutStatus",
    "PayoutValidation",
    "RejectionReason",
    "PayoutValidator",
    "SettlementEngine",
    "PayoutAccountRegistry",
    "WebhookReconciler",
    "InMemoryStorage",
    "LedgerStore",
]
