"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from clipledger.exceptions import InvalidGenerationRequestError
from clipledger.models.api import (
    AspectRatio,
    GenerationMode,
    NormalizedState,
    PaymentOutcome,
    ProviderName,
    ReservationStatus,
    SettlementOutcome,
    TaskOutcome,
    TaskState,
)


@dataclass(frozen=True)
class GenerationRequest:
    """Provider-agnostic generation request."""

    provider: ProviderName
    mode: GenerationMode
    prompt: str
    image_urls: tuple[str, ...] = ()
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    duration_seconds: int | None = None

    def __post_init__(self) -> None:
        """Validate mode/input consistency."""
        if not self.prompt.strip():
            raise InvalidGenerationRequestError("prompt cannot be empty")
        if self.mode == GenerationMode.IMAGE_TO_VIDEO and not self.image_urls:
            raise InvalidGenerationRequestError("image-to-video requires an image reference")
        if self.mode == GenerationMode.TEXT_TO_VIDEO and self.image_urls:
            raise InvalidGenerationRequestError("text-to-video cannot carry image references")
        if self.duration_seconds is not None and self.duration_seconds <= 0:
            raise InvalidGenerationRequestError(
                f"duration must be positive: {self.duration_seconds}"
            )


@dataclass(frozen=True)
class NormalizedStatus:
    """Provider status mapped into the shared vocabulary."""

    state: NormalizedState
    result_url: str | None = None
    failure_reason: str | None = None
    provider_state: str | None = None  # Native value, for logs only


@dataclass(frozen=True)
class ReservationData:
    """Immutable reservation snapshot."""

    reservation_id: UUID
    account_id: str
    amount: int
    status: ReservationStatus
    reference: str | None
    created_at: datetime
    resolved_at: datetime | None


@dataclass(frozen=True)
class CreditData:
    """Result of an idempotent credit. duplicate=True means the prior result was returned."""

    event_id: str
    account_id: str
    amount: int
    balance_after: int
    duplicate: bool
    created_at: datetime


@dataclass(frozen=True)
class PaymentEvent:
    """Verified payment-completion event, provider-agnostic."""

    event_id: str
    event_type: str
    payment_id: str
    outcome: PaymentOutcome
    account_id: str | None
    credits_granted: int | None
    amount_minor: int | None
    currency: str | None


@dataclass(frozen=True)
class SettlementResult:
    """What the settlement handler did with an event."""

    outcome: SettlementOutcome
    event_id: str
    credits_added: int = 0
    balance_after: int | None = None


@dataclass(frozen=True)
class TaskData:
    """Immutable generation task snapshot."""

    task_id: UUID
    account_id: str
    provider: ProviderName
    mode: GenerationMode
    state: TaskState
    outcome: TaskOutcome | None
    credits_reserved: int
    reservation_id: UUID | None
    provider_task_id: str | None
    result_url: str | None
    failure_reason: str | None
    poll_attempts: int
    created_at: datetime
    last_polled_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        """Whether the task has reached its single terminal state."""
        return self.state.is_terminal
