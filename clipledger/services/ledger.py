"""
Credit Ledger - reserve/commit/refund/credit on top of the account store.

All balance mutations for one account are serialized twice over:
- in-process by a per-account asyncio.Lock
- in the database by the store's conditional UPDATE

Every operation except reserve treats unknown or already-resolved identifiers
as idempotent no-ops, because webhooks and poll loops may call more than once.
"""

import asyncio
import weakref
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from clipledger.db.models import CreditGrant, Reservation, utc_now
from clipledger.exceptions import InsufficientCreditsError, InvalidAmountError
from clipledger.models.api import ReservationStatus
from clipledger.models.domain import CreditData, ReservationData
from clipledger.observability.metrics import metrics
from clipledger.services.account_store import AccountStore, SqlAccountStore

logger = get_logger(__name__)


class CreditLedger:
    """
    Credit ledger service.

    Opens its own short-lived session per operation so it can be shared by
    request handlers and background poll loops.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store_factory: Callable[[AsyncSession], AccountStore] = SqlAccountStore,
    ) -> None:
        self._session_factory = session_factory
        self._store_factory = store_factory
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ========================================================================
    # Public API
    # ========================================================================

    async def get_balance(self, account_id: str) -> int:
        """Read the current balance, creating the account on first query."""
        await self._ensure_account(account_id)
        async with self._session_factory() as session:
            return await self._store_factory(session).read(account_id)

    async def reserve(
        self, account_id: str, amount: int, reference: str | None = None
    ) -> ReservationData:
        """
        Hold credits for a task.

        Raises:
            InvalidAmountError: amount is not positive
            InsufficientCreditsError: balance < amount (balance left unchanged)
        """
        if amount <= 0:
            raise InvalidAmountError(amount)

        await self._ensure_account(account_id)

        async with self._account_lock(account_id):
            async with self._session_factory() as session:
                store = self._store_factory(session)
                remaining = await store.decrement_if_sufficient(account_id, amount)

                if remaining is None:
                    balance = await store.read(account_id)
                    await session.rollback()
                    metrics.record_ledger_operation("reserve", "insufficient")
                    logger.info(
                        "reservation_rejected_insufficient_credits",
                        account_id=account_id,
                        balance=balance,
                        required=amount,
                    )
                    raise InsufficientCreditsError(account_id, balance, amount)

                reservation = Reservation(
                    account_id=account_id,
                    amount=amount,
                    status=ReservationStatus.HELD.value,
                    reference=reference,
                )
                session.add(reservation)
                await session.flush()
                await session.commit()

        metrics.record_ledger_operation("reserve", "held")
        logger.info(
            "credits_reserved",
            account_id=account_id,
            reservation_id=str(reservation.id),
            amount=amount,
            balance_after=remaining,
            reference=reference,
        )
        return self._reservation_to_domain(reservation)

    async def commit(self, reservation_id: UUID) -> ReservationData | None:
        """Mark a held reservation as spent. Repeat calls are no-ops."""
        return await self._resolve(reservation_id, ReservationStatus.COMMITTED)

    async def refund(self, reservation_id: UUID) -> ReservationData | None:
        """
        Return a held reservation's credits to the balance.

        Never raises for committed, refunded or unknown reservations; the
        attempt is logged and the current record returned.
        """
        return await self._resolve(reservation_id, ReservationStatus.REFUNDED)

    async def credit(
        self,
        event_id: str,
        account_id: str,
        amount: int,
        *,
        source: str = "payment",
        amount_minor: int | None = None,
        currency: str | None = None,
    ) -> CreditData:
        """
        Increase a balance once per event_id.

        Later calls with the same event_id (even with different amounts)
        return the first call's result with duplicate=True.
        """
        if amount <= 0:
            raise InvalidAmountError(amount)

        existing = await self._find_grant(event_id)
        if existing is not None:
            return self._duplicate(existing)

        await self._ensure_account(account_id)

        async with self._account_lock(account_id):
            async with self._session_factory() as session:
                grant = CreditGrant(
                    event_id=event_id,
                    account_id=account_id,
                    amount=amount,
                    balance_after=0,
                    source=source,
                    amount_minor=amount_minor,
                    currency=currency,
                )
                session.add(grant)
                try:
                    await session.flush()
                except IntegrityError:
                    # Concurrent delivery of the same event won the insert
                    await session.rollback()
                    existing = await self._find_grant(event_id)
                    if existing is None:
                        raise
                    return self._duplicate(existing)

                balance = await self._store_factory(session).increment(account_id, amount)
                grant.balance_after = balance
                await session.commit()

        metrics.record_ledger_operation("credit", "applied")
        logger.info(
            "credits_granted",
            event_id=event_id,
            account_id=account_id,
            amount=amount,
            balance_after=balance,
            source=source,
        )
        return CreditData(
            event_id=event_id,
            account_id=account_id,
            amount=amount,
            balance_after=balance,
            duplicate=False,
            created_at=grant.created_at,
        )

    async def get_reservation(self, reservation_id: UUID) -> ReservationData | None:
        """Look up a reservation."""
        async with self._session_factory() as session:
            reservation = await session.get(Reservation, reservation_id)
        return self._reservation_to_domain(reservation) if reservation else None

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @asynccontextmanager
    async def _account_lock(self, account_id: str) -> AsyncIterator[None]:
        """Serialize balance mutations for one account within this process."""
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        async with lock:
            yield

    async def _ensure_account(self, account_id: str) -> None:
        """Create the account implicitly on first use."""
        async with self._session_factory() as session:
            created = await self._store_factory(session).ensure(account_id)
            if created:
                await session.commit()
                logger.info("account_created", account_id=account_id)

    async def _resolve(
        self, reservation_id: UUID, target: ReservationStatus
    ) -> ReservationData | None:
        """Move a reservation out of HELD exactly once."""
        operation = "commit" if target == ReservationStatus.COMMITTED else "refund"

        async with self._session_factory() as session:
            reservation = await session.get(Reservation, reservation_id)

        if reservation is None:
            metrics.record_ledger_operation(operation, "unknown")
            logger.warning(
                "reservation_not_found", reservation_id=str(reservation_id), operation=operation
            )
            return None

        if reservation.status != ReservationStatus.HELD.value:
            return self._already_resolved(reservation, operation)

        async with self._account_lock(reservation.account_id):
            async with self._session_factory() as session:
                stmt = (
                    update(Reservation)
                    .where(
                        Reservation.id == reservation_id,
                        Reservation.status == ReservationStatus.HELD.value,
                    )
                    .values(status=target.value, resolved_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)

                if result.rowcount == 0:
                    # Lost the race to another commit/refund
                    await session.rollback()
                    current = await session.get(Reservation, reservation_id)
                    return self._already_resolved(current, operation)

                balance_after: int | None = None
                if target == ReservationStatus.REFUNDED:
                    balance_after = await self._store_factory(session).increment(
                        reservation.account_id, reservation.amount
                    )

                await session.commit()
                resolved = await session.get(Reservation, reservation_id, populate_existing=True)

        metrics.record_ledger_operation(operation, target.value)
        logger.info(
            f"reservation_{target.value}",
            reservation_id=str(reservation_id),
            account_id=reservation.account_id,
            amount=reservation.amount,
            balance_after=balance_after,
        )
        return self._reservation_to_domain(resolved) if resolved else None

    def _already_resolved(
        self, reservation: Reservation | None, operation: str
    ) -> ReservationData | None:
        """Log and return a reservation whose disposition is already final."""
        if reservation is None:
            return None
        metrics.record_ledger_operation(operation, "noop")
        logger.info(
            "reservation_already_resolved",
            reservation_id=str(reservation.id),
            status=reservation.status,
            operation=operation,
        )
        return self._reservation_to_domain(reservation)

    async def _find_grant(self, event_id: str) -> CreditGrant | None:
        """Find a grant by its idempotency key."""
        async with self._session_factory() as session:
            stmt = select(CreditGrant).where(CreditGrant.event_id == event_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    def _duplicate(self, grant: CreditGrant) -> CreditData:
        """Prior result for a repeated event_id."""
        metrics.record_ledger_operation("credit", "duplicate")
        logger.info(
            "credit_skipped_duplicate",
            event_id=grant.event_id,
            account_id=grant.account_id,
            amount=grant.amount,
        )
        return CreditData(
            event_id=grant.event_id,
            account_id=grant.account_id,
            amount=grant.amount,
            balance_after=grant.balance_after,
            duplicate=True,
            created_at=grant.created_at,
        )

    def _reservation_to_domain(self, reservation: Reservation) -> ReservationData:
        """Convert ORM reservation to domain model."""
        return ReservationData(
            reservation_id=reservation.id,
            account_id=reservation.account_id,
            amount=reservation.amount,
            status=ReservationStatus(reservation.status),
            reference=reservation.reference,
            created_at=reservation.created_at,
            resolved_at=reservation.resolved_at,
        )
