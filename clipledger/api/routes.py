"""
API Routes - thin FastAPI adapters over the ledger, orchestrator and settlement.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from clipledger.api.dependencies import (
    UserIdentity,
    get_current_user,
    get_ledger,
    get_orchestrator,
    get_payment_provider,
    get_settlement_handler,
)
from clipledger.config import settings
from clipledger.db.session import get_db
from clipledger.exceptions import (
    InsufficientCreditsError,
    InvalidGenerationRequestError,
    PaymentProviderError,
    TaskNotFoundError,
    UnknownPlanError,
    UnsupportedModeError,
    WebhookVerificationError,
)
from clipledger.models.api import (
    BalanceResponse,
    ConfirmPaymentRequest,
    CreatePaymentIntentRequest,
    GenerationRequestBody,
    HealthResponse,
    PaymentIntentResponse,
    PricingPlanResponse,
    PricingPlansResponse,
    SettlementResponse,
    TaskResponse,
)
from clipledger.models.domain import GenerationRequest, SettlementResult, TaskData
from clipledger.services.ledger import CreditLedger
from clipledger.services.orchestrator import GenerationTaskOrchestrator
from clipledger.services.payment_provider import PaymentIntent, PaymentProvider
from clipledger.services.pricing_plans import get_plan, list_plans
from clipledger.services.settlement import PaymentSettlementHandler

logger = get_logger(__name__)
router = APIRouter()


def _task_response(task: TaskData) -> TaskResponse:
    return TaskResponse(
        task_id=task.task_id,
        provider=task.provider,
        mode=task.mode,
        state=task.state,
        outcome=task.outcome,
        credits_reserved=task.credits_reserved,
        result_url=task.result_url,
        failure_reason=task.failure_reason,
        poll_attempts=task.poll_attempts,
        created_at=task.created_at,
        last_polled_at=task.last_polled_at,
    )


def _settlement_response(result: SettlementResult) -> SettlementResponse:
    return SettlementResponse(
        outcome=result.outcome,
        event_id=result.event_id,
        credits_added=result.credits_added,
        credit_balance=result.balance_after,
    )


# ============================================================================
# Credits
# ============================================================================


@router.get("/v1/credits/balance", response_model=BalanceResponse)
async def get_balance(
    user: UserIdentity = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
) -> BalanceResponse:
    """Current credit balance of the caller's account."""
    balance = await ledger.get_balance(user.account_id)
    return BalanceResponse(account_id=user.account_id, credit_balance=balance)


# ============================================================================
# Generations
# ============================================================================


@router.post(
    "/v1/generations",
    response_model=TaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_generation(
    body: GenerationRequestBody,
    user: UserIdentity = Depends(get_current_user),
    orchestrator: GenerationTaskOrchestrator = Depends(get_orchestrator),
) -> TaskResponse:
    """
    Reserve credits and submit a generation.

    Returns as soon as the provider has the job (or refused it); poll
    GET /v1/generations/{task_id} for the outcome.
    """
    try:
        request = GenerationRequest(
            provider=body.provider,
            mode=body.mode,
            prompt=body.prompt,
            image_urls=tuple(body.image_urls),
            aspect_ratio=body.aspect_ratio,
            duration_seconds=body.duration_seconds,
        )
        task = await orchestrator.start(user.account_id, request)
        return _task_response(task)

    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient credits. Balance: {exc.balance}, Required: {exc.required}",
        ) from exc

    except (UnsupportedModeError, InvalidGenerationRequestError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc


@router.get("/v1/generations/{task_id}", response_model=TaskResponse)
async def get_generation(
    task_id: UUID,
    user: UserIdentity = Depends(get_current_user),
    orchestrator: GenerationTaskOrchestrator = Depends(get_orchestrator),
) -> TaskResponse:
    """Current normalized state of one of the caller's tasks."""
    try:
        task = await orchestrator.get_task(task_id, account_id=user.account_id)
        return _task_response(task)

    except TaskNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Generation task not found: {task_id}",
        ) from exc


# ============================================================================
# Payments
# ============================================================================


@router.get("/v1/payments/plans", response_model=PricingPlansResponse)
async def get_pricing_plans() -> PricingPlansResponse:
    """List the credit packages on sale."""
    return PricingPlansResponse(
        plans=[
            PricingPlanResponse(
                plan_id=plan.plan_id,
                name=plan.name,
                credits=plan.credits,
                price_minor=plan.price_minor,
                currency=plan.currency,
                popular=plan.popular,
            )
            for plan in list_plans()
        ]
    )


@router.post(
    "/v1/payments/intents",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_intent(
    body: CreatePaymentIntentRequest,
    user: UserIdentity = Depends(get_current_user),
    payment_provider: PaymentProvider = Depends(get_payment_provider),
) -> PaymentIntentResponse:
    """
    Create a payment intent for a catalog plan.

    Price and credit count come from the plan; the account and credits ride
    along as metadata, and credits are granted when the payment settles,
    never here.
    """
    try:
        plan = get_plan(body.plan_id)
    except UnknownPlanError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Pricing plan not found: {body.plan_id}",
        ) from exc

    current_timestamp = int(datetime.now(UTC).timestamp())

    intent = PaymentIntent(
        amount_minor=plan.price_minor,
        currency=plan.currency,
        description=f"{plan.name} plan: {plan.credits} credits",
        metadata_account_id=user.account_id,
        metadata_credits=plan.credits,
        idempotency_key=f"purchase-{user.account_id}-{plan.plan_id}-{current_timestamp}",
    )

    try:
        payment_result = await payment_provider.create_payment_intent(intent)

        return PaymentIntentResponse(
            payment_id=payment_result.payment_id,
            client_secret=payment_result.client_secret,
            publishable_key=settings.stripe_publishable_key,
            amount_minor=payment_result.amount_minor,
            currency=payment_result.currency,
            plan_id=plan.plan_id,
            credits=plan.credits,
        )

    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable",
        ) from exc


@router.post("/v1/payments/confirm", response_model=SettlementResponse)
async def confirm_payment(
    body: ConfirmPaymentRequest,
    user: UserIdentity = Depends(get_current_user),
    payment_provider: PaymentProvider = Depends(get_payment_provider),
    handler: PaymentSettlementHandler = Depends(get_settlement_handler),
) -> SettlementResponse:
    """
    Settle a payment the client just completed, without waiting for the webhook.

    Uses the same idempotency key as the webhook, so whichever arrives second
    is a duplicate.
    """
    try:
        event = await payment_provider.get_payment_event(body.payment_id)
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable",
        ) from exc

    if event.account_id is not None and event.account_id != user.account_id:
        logger.warning(
            "payment_confirm_account_mismatch",
            payment_id=body.payment_id,
            account_id=user.account_id,
        )
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Payment not found: {body.payment_id}",
        )

    result = await handler.settle(event)
    return _settlement_response(result)


@router.post("/v1/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    payment_provider: PaymentProvider = Depends(get_payment_provider),
    handler: PaymentSettlementHandler = Depends(get_settlement_handler),
) -> dict[str, str]:
    """
    Handle Stripe webhook events.

    Always answers 200 for authentic events, including ones that could not be
    used, so Stripe stops redelivering them.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        event = await payment_provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc

    if event is None:
        return {"status": "ignored"}

    logger.info(
        "stripe_webhook_received",
        event_id=event.event_id,
        event_type=event.event_type,
        payment_id=event.payment_id,
    )

    result = await handler.settle(event)
    return {"status": "ok", "outcome": result.outcome.value}


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            version=settings.api_version,
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
            },
        ) from exc
