"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol

from clipledger.models.domain import PaymentEvent


@dataclass(frozen=True)
class PaymentIntent:
    """
    Provider-agnostic payment intent.

    The account and credit quantity travel as provider metadata so the
    settlement handler can grant credits from the completion event alone.
    """

    amount_minor: int
    currency: str
    description: str
    metadata_account_id: str
    metadata_credits: int
    idempotency_key: str


@dataclass(frozen=True)
class PaymentResult:
    """
    Provider-agnostic payment result.

    Returned after payment creation and on status lookups.
    """

    payment_id: str  # Provider-specific payment ID
    client_secret: str  # For client-side payment confirmation
    status: str
    amount_minor: int
    currency: str
    metadata_account_id: str | None = None
    metadata_credits: int | None = None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Stripe is the only gateway today; settlement only sees PaymentEvent.
    """

    async def create_payment_intent(self, intent: PaymentIntent) -> PaymentResult:
        """
        Create a payment intent with the provider.

        Raises:
            PaymentProviderError: If payment creation fails
        """
        ...

    async def get_payment_event(self, payment_id: str) -> PaymentEvent:
        """
        Look up a payment and describe it as a completion event.

        Used by the client-confirm path, which must settle exactly like the
        webhook for the same payment.

        Raises:
            PaymentProviderError: If the lookup fails
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> PaymentEvent | None:
        """
        Verify and parse a webhook delivery.

        Returns None for authentic events that are not payment completions.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
