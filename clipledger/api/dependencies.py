"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from clipledger.config import settings
from clipledger.exceptions import AuthenticationError
from clipledger.services.ledger import CreditLedger
from clipledger.services.orchestrator import GenerationTaskOrchestrator
from clipledger.services.payment_provider import PaymentProvider
from clipledger.services.settlement import PaymentSettlementHandler
from clipledger.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

# ============================================================================
# User JWT Authentication
# ============================================================================


@dataclass
class UserIdentity:
    """Authenticated principal from a verified bearer token."""

    account_id: str  # sub claim
    email: str | None = None


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def verify_token(token: str) -> UserIdentity:
    """
    Verify a bearer token issued by the identity provider.

    Raises:
        AuthenticationError: bad signature, expired, wrong audience or no sub
    """
    if not settings.auth_jwt_key:
        raise AuthenticationError("token verification key not configured")

    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_key,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
            options={"verify_aud": settings.auth_jwt_audience is not None},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(f"invalid token: {exc}") from exc

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthenticationError("token has no subject")

    email = claims.get("email")
    return UserIdentity(account_id=subject, email=email if isinstance(email, str) else None)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """
    FastAPI dependency resolving the caller's account from Authorization: Bearer.

    Usage:
        @router.get("/v1/credits/balance")
        async def get_balance(user: UserIdentity = Depends(get_current_user)):
            # user.account_id is the ledger account key
            pass

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return verify_token(credentials.credentials)
    except AuthenticationError as exc:
        logger.warning("token_verification_failed", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


# ============================================================================
# Services
# ============================================================================


def get_ledger(request: Request) -> CreditLedger:
    """Ledger built at startup."""
    ledger: CreditLedger = request.app.state.ledger
    return ledger


def get_orchestrator(request: Request) -> GenerationTaskOrchestrator:
    """Orchestrator built at startup; owns the background poll loops."""
    orchestrator: GenerationTaskOrchestrator = request.app.state.orchestrator
    return orchestrator


def get_settlement_handler(
    ledger: CreditLedger = Depends(get_ledger),
) -> PaymentSettlementHandler:
    return PaymentSettlementHandler(ledger)


def get_payment_provider() -> PaymentProvider:
    """
    Stripe provider from settings.

    Raises:
        HTTPException 503 if Stripe is not configured
    """
    if not settings.stripe_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )
