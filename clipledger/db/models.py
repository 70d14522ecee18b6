"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Column types are dialect-neutral so the same schema runs on PostgreSQL and SQLite.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Account(Base):
    """
    ORM model for accounts table.

    Keyed by the identity provider's subject id. Balance is only mutated
    through the credit ledger.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    credit_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_credit_balance_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Account(id={self.id}, credit_balance={self.credit_balance})>"


class Reservation(Base):
    """
    ORM model for reservations table.

    A provisional hold on credits. status moves from held to exactly one of
    committed or refunded.
    """

    __tablename__ = "reservations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("accounts.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="held")
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_reservation_amount_positive"),
        CheckConstraint(
            "status IN ('held', 'committed', 'refunded')", name="ck_reservation_status"
        ),
        Index("idx_reservations_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Reservation(id={self.id}, account_id={self.account_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class CreditGrant(Base):
    """
    ORM model for credit_grants table.

    Idempotency record for balance increases: one row per applied event_id.
    """

    __tablename__ = "credit_grants"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    account_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("accounts.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Payment details (for auditing)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="payment")
    amount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (CheckConstraint("amount > 0", name="ck_grant_amount_positive"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditGrant(event_id={self.event_id}, account_id={self.account_id}, "
            f"amount={self.amount})>"
        )


class GenerationTask(Base):
    """
    ORM model for generation_tasks table.

    Owned by the orchestrator; provider adapters never touch it.
    """

    __tablename__ = "generation_tasks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("accounts.id"), nullable=False, index=True
    )

    # Request
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    image_urls: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    aspect_ratio: Mapped[str] = mapped_column(String(10), nullable=False)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Credits
    credits_reserved: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reservation_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("reservations.id"), nullable=True
    )

    # Lifecycle
    provider_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="reserved")
    outcome: Mapped[str | None] = mapped_column(String(30), nullable=True)
    result_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    poll_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_polled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_reserved > 0", name="ck_task_credits_positive"),
        CheckConstraint("poll_attempts >= 0", name="ck_task_poll_attempts_non_negative"),
        Index("idx_generation_tasks_state", "state"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<GenerationTask(id={self.id}, provider={self.provider}, "
            f"state={self.state}, attempts={self.poll_attempts})>"
        )
