"""
Task Store - persistence for generation tasks.

State changes are compare-and-set on the current state, so a task can only
ever be moved out of the state the caller last observed.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipledger.db.models import GenerationTask, utc_now
from clipledger.exceptions import TaskNotFoundError
from clipledger.models.api import GenerationMode, ProviderName, TaskOutcome, TaskState
from clipledger.models.domain import GenerationRequest, TaskData


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class TaskStore:
    """Generation task repository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        task_id: UUID,
        account_id: str,
        request: GenerationRequest,
        credits_reserved: int,
        reservation_id: UUID,
    ) -> TaskData:
        """Persist a new task in the reserved state."""
        task = GenerationTask(
            id=task_id,
            account_id=account_id,
            provider=request.provider.value,
            mode=request.mode.value,
            prompt=request.prompt,
            image_urls=list(request.image_urls),
            aspect_ratio=request.aspect_ratio.value,
            duration_seconds=request.duration_seconds,
            credits_reserved=credits_reserved,
            reservation_id=reservation_id,
            state=TaskState.RESERVED.value,
            poll_attempts=0,
        )
        async with self._session_factory() as session:
            session.add(task)
            await session.commit()
        return self._to_domain(task)

    async def get(self, task_id: UUID) -> TaskData | None:
        async with self._session_factory() as session:
            task = await session.get(GenerationTask, task_id)
        return self._to_domain(task) if task else None

    async def list_in_states(self, states: Iterable[TaskState]) -> list[TaskData]:
        """Tasks currently in any of states, oldest first."""
        stmt = (
            select(GenerationTask)
            .where(GenerationTask.state.in_([state.value for state in states]))
            .order_by(GenerationTask.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            tasks = result.scalars().all()
        return [self._to_domain(task) for task in tasks]

    async def transition(
        self,
        task_id: UUID,
        expected: TaskState,
        target: TaskState,
        *,
        provider_task_id: str | None = None,
        outcome: TaskOutcome | None = None,
        result_url: str | None = None,
        failure_reason: str | None = None,
    ) -> TaskData | None:
        """
        Move a task from expected to target.

        Returns None if the task was no longer in the expected state.
        """
        changes: dict[str, Any] = {"state": target.value, "updated_at": utc_now()}
        if provider_task_id is not None:
            changes["provider_task_id"] = provider_task_id
        if outcome is not None:
            changes["outcome"] = outcome.value
        if result_url is not None:
            changes["result_url"] = result_url
        if failure_reason is not None:
            changes["failure_reason"] = failure_reason

        stmt = (
            update(GenerationTask)
            .where(GenerationTask.id == task_id, GenerationTask.state == expected.value)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount == 0:
            return None
        return await self.get(task_id)

    async def record_poll(self, task_id: UUID, attempt: int) -> TaskData:
        """Store the attempt counter and poll timestamp after a status fetch."""
        stmt = (
            update(GenerationTask)
            .where(GenerationTask.id == task_id)
            .values(poll_attempts=attempt, last_polled_at=utc_now(), updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

        task = await self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def record_result(self, task_id: UUID, result_url: str) -> TaskData:
        """Store the delivered video URL ahead of the terminal write; state is unchanged."""
        stmt = (
            update(GenerationTask)
            .where(GenerationTask.id == task_id)
            .values(result_url=result_url, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

        task = await self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _to_domain(self, task: GenerationTask) -> TaskData:
        """Convert ORM task to domain model."""
        return TaskData(
            task_id=task.id,
            account_id=task.account_id,
            provider=ProviderName(task.provider),
            mode=GenerationMode(task.mode),
            state=TaskState(task.state),
            outcome=TaskOutcome(task.outcome) if task.outcome else None,
            credits_reserved=task.credits_reserved,
            reservation_id=task.reservation_id,
            provider_task_id=task.provider_task_id,
            result_url=task.result_url,
            failure_reason=task.failure_reason,
            poll_attempts=task.poll_attempts,
            created_at=_aware(task.created_at) or task.created_at,
            last_polled_at=_aware(task.last_polled_at),
        )
