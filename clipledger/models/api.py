"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class ProviderName(str, Enum):
    """External generation providers."""

    VEO = "veo"
    SORA = "sora"


class GenerationMode(str, Enum):
    """Generation input mode. Text and image inputs are mutually exclusive."""

    TEXT_TO_VIDEO = "text-to-video"
    IMAGE_TO_VIDEO = "image-to-video"


class AspectRatio(str, Enum):
    """Aspect ratios accepted by the public API."""

    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    AUTO = "Auto"


class TaskState(str, Enum):
    """Generation task lifecycle states."""

    RESERVED = "reserved"
    SUBMITTED = "submitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        """Terminal states never transition again."""
        return self in TERMINAL_TASK_STATES


TERMINAL_TASK_STATES = frozenset(
    {TaskState.SUCCEEDED, TaskState.FAILED, TaskState.TIMED_OUT, TaskState.REFUNDED}
)


class TaskOutcome(str, Enum):
    """Why a task ended without a result."""

    PROVIDER_REJECTED = "provider_rejected"
    PROVIDER_FAILURE = "provider_failure"
    TIMEOUT_EXCEEDED = "timeout_exceeded"


class NormalizedState(str, Enum):
    """Provider-agnostic status classification."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReservationStatus(str, Enum):
    """Reservation disposition. HELD is the only non-final status."""

    HELD = "held"
    COMMITTED = "committed"
    REFUNDED = "refunded"


class PaymentOutcome(str, Enum):
    """Payment gateway outcome."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SettlementOutcome(str, Enum):
    """Result of handing a payment event to the settlement handler."""

    CREDITED = "credited"
    DUPLICATE = "duplicate"
    MISSING_METADATA = "missing_metadata"
    NOT_SUCCEEDED = "not_succeeded"


# ============================================================================
# Balance Models
# ============================================================================


class BalanceResponse(BaseModel):
    """GET /v1/credits/balance response."""

    account_id: str
    credit_balance: int


# ============================================================================
# Generation Models
# ============================================================================


class GenerationRequestBody(BaseModel):
    """POST /v1/generations request body."""

    provider: ProviderName
    mode: GenerationMode
    prompt: str = Field(..., min_length=1, max_length=5000)
    image_urls: list[str] = Field(default_factory=list, max_length=2)
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    duration_seconds: int | None = Field(None, gt=0, le=60)

    @field_validator("image_urls")
    @classmethod
    def validate_image_urls(cls, v: list[str]) -> list[str]:
        """Image references must be public http(s) URLs."""
        for url in v:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"image_urls must be http(s) URLs, got: {url[:40]}")
        return v

    @model_validator(mode="after")
    def validate_mode_inputs(self) -> "GenerationRequestBody":
        """Keep text and image input modes mutually exclusive."""
        if self.mode == GenerationMode.IMAGE_TO_VIDEO and not self.image_urls:
            raise ValueError("image-to-video requires at least one image URL")
        if self.mode == GenerationMode.TEXT_TO_VIDEO and self.image_urls:
            raise ValueError("text-to-video does not accept image URLs")
        return self


class TaskResponse(BaseModel):
    """Generation task in its normalized form."""

    task_id: UUID
    provider: ProviderName
    mode: GenerationMode
    state: TaskState
    outcome: TaskOutcome | None = None
    credits_reserved: int
    result_url: str | None = None
    failure_reason: str | None = None
    poll_attempts: int = 0
    created_at: datetime
    last_polled_at: datetime | None = None


# ============================================================================
# Payment Models
# ============================================================================


class PricingPlanResponse(BaseModel):
    """One purchasable credit package."""

    plan_id: str
    name: str
    credits: int
    price_minor: int
    currency: str
    popular: bool = False


class PricingPlansResponse(BaseModel):
    """GET /v1/payments/plans response."""

    plans: list[PricingPlanResponse]


class CreatePaymentIntentRequest(BaseModel):
    """
    POST /v1/payments/intents request body.

    Only the plan is chosen by the client; price and credits come from the
    server's catalog.
    """

    plan_id: str = Field(..., min_length=1, max_length=64)

    @field_validator("plan_id")
    @classmethod
    def normalize_plan_id(cls, v: str) -> str:
        """Plan IDs are lower-case slugs."""
        return v.strip().lower()


class PaymentIntentResponse(BaseModel):
    """POST /v1/payments/intents response."""

    payment_id: str
    client_secret: str
    publishable_key: str
    plan_id: str
    amount_minor: int
    currency: str
    credits: int


class ConfirmPaymentRequest(BaseModel):
    """POST /v1/payments/confirm request body."""

    payment_id: str = Field(..., min_length=1, max_length=255)


class SettlementResponse(BaseModel):
    """Result of settling a payment."""

    outcome: SettlementOutcome
    event_id: str
    credits_added: int = 0
    credit_balance: int | None = None


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    version: str
