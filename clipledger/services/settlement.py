"""
Payment Settlement - turns verified payment events into ledger credits.

Never raises for events it can't use: the gateway redelivers anything that
errors, and a malformed event will be just as malformed next time.
"""

from structlog import get_logger

from clipledger.models.api import PaymentOutcome, SettlementOutcome
from clipledger.models.domain import PaymentEvent, SettlementResult
from clipledger.observability.metrics import metrics
from clipledger.services.ledger import CreditLedger

logger = get_logger(__name__)


class PaymentSettlementHandler:
    """Credits an account exactly once per payment event id."""

    def __init__(self, ledger: CreditLedger) -> None:
        self.ledger = ledger

    async def settle(self, event: PaymentEvent) -> SettlementResult:
        if event.outcome != PaymentOutcome.SUCCEEDED:
            logger.info(
                "payment_not_succeeded",
                event_id=event.event_id,
                event_type=event.event_type,
                payment_id=event.payment_id,
                outcome=event.outcome.value,
            )
            return self._result(SettlementOutcome.NOT_SUCCEEDED, event)

        if not event.account_id or not event.credits_granted:
            logger.warning(
                "payment_missing_metadata",
                event_id=event.event_id,
                payment_id=event.payment_id,
                has_account_id=bool(event.account_id),
                has_credits=bool(event.credits_granted),
            )
            return self._result(SettlementOutcome.MISSING_METADATA, event)

        credit = await self.ledger.credit(
            event.event_id,
            event.account_id,
            event.credits_granted,
            source="payment",
            amount_minor=event.amount_minor,
            currency=event.currency,
        )

        if credit.duplicate:
            logger.info(
                "payment_already_settled",
                event_id=event.event_id,
                payment_id=event.payment_id,
                account_id=credit.account_id,
            )
            return self._result(
                SettlementOutcome.DUPLICATE, event, balance_after=credit.balance_after
            )

        logger.info(
            "payment_settled",
            event_id=event.event_id,
            payment_id=event.payment_id,
            account_id=credit.account_id,
            credits_added=credit.amount,
            balance_after=credit.balance_after,
        )
        return self._result(
            SettlementOutcome.CREDITED,
            event,
            credits_added=credit.amount,
            balance_after=credit.balance_after,
        )

    def _result(
        self,
        outcome: SettlementOutcome,
        event: PaymentEvent,
        credits_added: int = 0,
        balance_after: int | None = None,
    ) -> SettlementResult:
        metrics.record_settlement(outcome.value, credits_added)
        return SettlementResult(
            outcome=outcome,
            event_id=event.event_id,
            credits_added=credits_added,
            balance_after=balance_after,
        )
