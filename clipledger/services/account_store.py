"""
Account Store - balance storage primitives used by the credit ledger.

The ledger only needs a read, an unconditional increment and an atomic
decrement-if-sufficient. The SQL implementation pushes the balance check into
the UPDATE's WHERE clause so concurrent writers can never overdraw an account.
"""

from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clipledger.db.models import Account, utc_now
from clipledger.exceptions import AccountNotFoundError


class AccountStore(Protocol):
    """
    Balance store protocol.

    Implementations operate inside the caller's unit of work; the caller
    commits or rolls back.
    """

    async def ensure(self, account_id: str) -> bool:
        """Create the account at zero balance if missing. Returns True if created."""
        ...

    async def read(self, account_id: str) -> int:
        """Current balance (0 for unknown accounts)."""
        ...

    async def decrement_if_sufficient(self, account_id: str, amount: int) -> int | None:
        """Atomically subtract amount if balance >= amount. Returns new balance or None."""
        ...

    async def increment(self, account_id: str, amount: int) -> int:
        """Add amount to the balance. Returns new balance."""
        ...


class SqlAccountStore:
    """AccountStore on top of the accounts table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def ensure(self, account_id: str) -> bool:
        """
        Insert the account row if it doesn't exist yet.

        Must be the first write of its session: a concurrent insert of the
        same id rolls the session back.
        """
        if await self.session.get(Account, account_id) is not None:
            return False

        self.session.add(Account(id=account_id, credit_balance=0))
        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - account created by another request
            await self.session.rollback()
            return False
        return True

    async def read(self, account_id: str) -> int:
        stmt = select(Account.credit_balance).where(Account.id == account_id)
        result = await self.session.execute(stmt)
        balance = result.scalar_one_or_none()
        return int(balance) if balance is not None else 0

    async def decrement_if_sufficient(self, account_id: str, amount: int) -> int | None:
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.credit_balance >= amount)
            .values(credit_balance=Account.credit_balance - amount, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            return None
        return await self.read(account_id)

    async def increment(self, account_id: str, amount: int) -> int:
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(credit_balance=Account.credit_balance + amount, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            raise AccountNotFoundError(account_id)
        return await self.read(account_id)
