import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .accounts import PayoutAccountRegistry
from .config import Settings, get_settings
from .events import MalformedEventError, parse_event
from .models import (
    CreatePayoutRequest,
    EarningsSummary,
    OnboardingLink,
    OnboardRequest,
    PayoutAccountStatus,
    PayoutRequest,
    PayoutResponse,
    PayoutValidation,
)
from .processor import PaymentProcessor, ProcessorError, StripeProcessor, WebhookVerificationError
from .reconciler import WebhookReconciler
from .service import (
    PayoutNotFoundError,
    PayoutProcessingError,
    PayoutRejectedError,
    PayoutValidator,
    SettlementEngine,
)
from .storage import InMemoryStorage, LedgerStore

logger = logging.getLogger(__name__)

router = APIRouter()


def get_user_id(x_user_id: Optional[str] = Header(None)) -> UUID:
    """Identity of the caller, set by the authenticating gateway."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Failed to authenticate user")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Failed to authenticate user")


def get_validator(request: Request) -> PayoutValidator:
    return request.app.state.validator


def get_settlement(request: Request) -> SettlementEngine:
    return request.app.state.settlement


def get_accounts(request: Request) -> PayoutAccountRegistry:
    return request.app.state.accounts


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "referral-payouts"}


@router.post("/payouts", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def create_payout(
    body: CreatePayoutRequest,
    user_id: UUID = Depends(get_user_id),
    settlement: SettlementEngine = Depends(get_settlement),
):
    try:
        payout = settlement.create_payout(user_id, body.amount)
    except PayoutRejectedError as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": e.validation.message,
                "reason": e.validation.reason.value,
                "available_earnings": str(e.validation.available_earnings),
            },
        )
    except PayoutProcessingError as e:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={
                "error": "Failed to process payout",
                "details": e.payout.failure_reason,
                "payout_request_id": str(e.payout.id),
            },
        )
    return PayoutResponse.from_request(payout)


@router.post("/payouts/validate", response_model=PayoutValidation, tags=["Payouts"])
def validate_payout(
    body: CreatePayoutRequest,
    user_id: UUID = Depends(get_user_id),
    validator: PayoutValidator = Depends(get_validator),
) -> PayoutValidation:
    return validator.validate(user_id, body.amount)


@router.get("/payouts", response_model=list[PayoutRequest], tags=["Payouts"])
def list_payouts(
    user_id: UUID = Depends(get_user_id),
    settlement: SettlementEngine = Depends(get_settlement),
) -> list[PayoutRequest]:
    return settlement.list_payouts(user_id)


@router.get("/payouts/{payout_request_id}", response_model=PayoutRequest, tags=["Payouts"])
def get_payout(
    payout_request_id: UUID,
    user_id: UUID = Depends(get_user_id),
    settlement: SettlementEngine = Depends(get_settlement),
) -> PayoutRequest:
    try:
        return settlement.get_payout(user_id, payout_request_id)
    except PayoutNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Payout request {payout_request_id} not found")


@router.get("/earnings", response_model=EarningsSummary, tags=["Payouts"])
def get_earnings(
    user_id: UUID = Depends(get_user_id),
    settlement: SettlementEngine = Depends(get_settlement),
) -> EarningsSummary:
    return settlement.earnings_summary(user_id)


@router.post("/payout-accounts/onboard", response_model=OnboardingLink, tags=["Payout Accounts"])
def onboard_account(
    body: OnboardRequest,
    user_id: UUID = Depends(get_user_id),
    x_user_email: Optional[str] = Header(None),
    accounts: PayoutAccountRegistry = Depends(get_accounts),
) -> OnboardingLink:
    try:
        return accounts.onboard(user_id, x_user_email, body.return_url, body.refresh_url)
    except ProcessorError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post("/payout-accounts/status", response_model=PayoutAccountStatus, tags=["Payout Accounts"])
def account_status(
    user_id: UUID = Depends(get_user_id),
    accounts: PayoutAccountRegistry = Depends(get_accounts),
) -> PayoutAccountStatus:
    try:
        return accounts.refresh_status(user_id)
    except ProcessorError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post("/webhooks/payouts", tags=["Webhooks"])
async def payout_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    # Signatures cover the exact bytes received; read them before any parsing.
    payload = await request.body()
    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No signature found")

    processor: PaymentProcessor = request.app.state.processor
    try:
        raw_event = processor.verify_webhook(payload, stripe_signature)
        event = parse_event(raw_event)
    except (WebhookVerificationError, MalformedEventError) as e:
        logger.warning("Rejected payout webhook: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Webhook error: {e}")

    reconciler: WebhookReconciler = request.app.state.reconciler
    outcome = await run_in_threadpool(reconciler.handle, event)
    return {"received": True, "outcome": outcome.value}


def build_store(settings: Settings) -> LedgerStore:
    if settings.DATABASE_URL:
        from .sql_store import SqlLedgerStore
        return SqlLedgerStore(
            settings.DATABASE_URL,
            lock_ttl_seconds=settings.LEDGER_LOCK_TTL_SECONDS,
            lock_wait_seconds=settings.LEDGER_LOCK_WAIT_SECONDS,
        )
    return InMemoryStorage()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[LedgerStore] = None,
    processor: Optional[PaymentProcessor] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = store or build_store(settings)
    processor = processor or StripeProcessor(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_PAYOUT_WEBHOOK_SECRET,
        timeout=settings.PROCESSOR_TIMEOUT_SECONDS,
        tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
    )

    app = FastAPI(
        title=settings.APP_NAME,
        description="Referral commission payouts settled through Stripe Connect transfers",
        version=settings.APP_VERSION,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    validator = PayoutValidator(store, settings)
    accounts = PayoutAccountRegistry(store, processor, settings)
    app.state.store = store
    app.state.processor = processor
    app.state.validator = validator
    app.state.settlement = SettlementEngine(store, processor, settings, validator=validator)
    app.state.accounts = accounts
    app.state.reconciler = WebhookReconciler(store, accounts)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
