"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

from typing import Any

import stripe
from structlog import get_logger

from clipledger.exceptions import PaymentProviderError, WebhookVerificationError
from clipledger.models.api import PaymentOutcome
from clipledger.models.domain import PaymentEvent
from clipledger.services.payment_provider import PaymentIntent, PaymentResult

logger = get_logger(__name__)

SUCCEEDED_EVENT = "payment_intent.succeeded"
FAILED_EVENT = "payment_intent.payment_failed"


def settlement_key(payment_id: str) -> str:
    """
    Idempotency key for crediting a payment.

    Shared by the webhook and the client-confirm path so one payment credits
    once no matter how many times, or through which route, it is reported.
    """
    return f"stripe:{payment_id}"


def _metadata_value(payment_intent: Any, *keys: str) -> str | None:
    """First present metadata value among keys."""
    metadata = getattr(payment_intent, "metadata", None)
    if metadata is None:
        return None
    for key in keys:
        if key in metadata and metadata[key]:
            return str(metadata[key])
    return None


def _parse_credits(raw: str | None) -> int | None:
    """Credits metadata is a decimal string; anything else counts as missing."""
    if raw is None:
        return None
    try:
        credits = int(raw)
    except ValueError:
        return None
    return credits if credits > 0 else None


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    async def create_payment_intent(self, intent: PaymentIntent) -> PaymentResult:
        """
        Create a Stripe PaymentIntent carrying account and credits metadata.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info(
                "creating_stripe_payment_intent",
                amount_minor=intent.amount_minor,
                currency=intent.currency,
                credits=intent.metadata_credits,
                idempotency_key=intent.idempotency_key,
            )

            payment_intent = stripe.PaymentIntent.create(
                amount=intent.amount_minor,
                currency=intent.currency.lower(),
                description=intent.description,
                metadata={
                    "account_id": intent.metadata_account_id,
                    "credits": str(intent.metadata_credits),
                },
                automatic_payment_methods={"enabled": True},
                idempotency_key=intent.idempotency_key,
            )

            logger.info(
                "stripe_payment_intent_created",
                payment_intent_id=payment_intent.id,
                status=payment_intent.status,
            )

            return self._to_result(payment_intent)

        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_intent_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe payment failed: {exc}") from exc

    async def get_payment_status(self, payment_id: str) -> PaymentResult:
        """
        Get current status of a payment intent from Stripe.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info("getting_stripe_payment_status", payment_intent_id=payment_id)

            payment_intent = stripe.PaymentIntent.retrieve(payment_id)

            logger.info(
                "stripe_payment_status_retrieved",
                payment_intent_id=payment_id,
                status=payment_intent.status,
            )

            return self._to_result(payment_intent)

        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_status_failed",
                payment_intent_id=payment_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to get payment status: {exc}") from exc

    async def get_payment_event(self, payment_id: str) -> PaymentEvent:
        """Describe the payment's current state as a completion event."""
        result = await self.get_payment_status(payment_id)
        succeeded = result.status == "succeeded"
        return PaymentEvent(
            event_id=settlement_key(result.payment_id),
            event_type=SUCCEEDED_EVENT if succeeded else f"payment_intent.{result.status}",
            payment_id=result.payment_id,
            outcome=PaymentOutcome.SUCCEEDED if succeeded else PaymentOutcome.FAILED,
            account_id=result.metadata_account_id,
            credits_granted=result.metadata_credits,
            amount_minor=result.amount_minor,
            currency=result.currency,
        )

    async def verify_webhook(self, payload: bytes, signature: str) -> PaymentEvent | None:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Payment event, or None for event types that don't settle payments

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        try:
            logger.info("verifying_stripe_webhook", signature_present=bool(signature))

            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)

        if event.type == SUCCEEDED_EVENT:
            outcome = PaymentOutcome.SUCCEEDED
        elif event.type == FAILED_EVENT:
            outcome = PaymentOutcome.FAILED
        else:
            logger.info("stripe_webhook_ignored", event_id=event.id, event_type=event.type)
            return None

        payment_intent = event.data.object
        result = self._to_result(payment_intent)

        return PaymentEvent(
            event_id=settlement_key(result.payment_id),
            event_type=event.type,
            payment_id=result.payment_id,
            outcome=outcome,
            account_id=result.metadata_account_id,
            credits_granted=result.metadata_credits,
            amount_minor=result.amount_minor,
            currency=result.currency,
        )

    def _to_result(self, payment_intent: Any) -> PaymentResult:
        """Convert a Stripe PaymentIntent object to PaymentResult."""
        currency = getattr(payment_intent, "currency", None)
        return PaymentResult(
            payment_id=payment_intent.id,
            client_secret=getattr(payment_intent, "client_secret", None) or "",
            status=payment_intent.status,
            amount_minor=getattr(payment_intent, "amount", None) or 0,
            currency=currency.upper() if currency else "",
            # userId is what older mobile clients wrote
            metadata_account_id=_metadata_value(payment_intent, "account_id", "userId"),
            metadata_credits=_parse_credits(_metadata_value(payment_intent, "credits")),
        )
