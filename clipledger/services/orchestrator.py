"""
Generation Task Orchestrator - owns the task lifecycle.

    reserved ──submit ok──> submitted ──answer──> running ──answer──> running
        │                      │                     │
        └─submit rejected─> refunded                 ├─> succeeded  (commit)
                               ├─> timed_out         ├─> failed     (refund)
                               └─> failed            └─> timed_out  (refund)

A submitted task moves to running on its first answered status fetch, terminal
or not. A submitted task times out only if the provider never answered, and
fails only if the poll loop itself breaks.

Every task that reserves credits reaches exactly one terminal state, and the
reservation is resolved before that state is written. The result URL is stored
ahead of the commit, so a failed terminal write still finishes as a success.
A crash in between leaves the task non-terminal; recovery resolves it again
and the ledger absorbs the repeat.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime
from uuid import UUID, uuid4

from structlog import get_logger

from clipledger.exceptions import (
    InvalidTransitionError,
    ProviderRejectedError,
    TaskNotFoundError,
    TransientFetchError,
    UnsupportedModeError,
)
from clipledger.models.api import (
    NormalizedState,
    ProviderName,
    ReservationStatus,
    TaskOutcome,
    TaskState,
)
from clipledger.models.domain import GenerationRequest, TaskData
from clipledger.observability.logging import log_context
from clipledger.observability.metrics import metrics
from clipledger.observability.tracing import trace_operation
from clipledger.services.generation_provider import GenerationProvider, require_supported_mode
from clipledger.services.ledger import CreditLedger
from clipledger.services.task_store import TaskStore

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Mapping[TaskState, frozenset[TaskState]] = {
    TaskState.RESERVED: frozenset({TaskState.SUBMITTED, TaskState.REFUNDED}),
    TaskState.SUBMITTED: frozenset({TaskState.RUNNING, TaskState.FAILED, TaskState.TIMED_OUT}),
    TaskState.RUNNING: frozenset({TaskState.SUCCEEDED, TaskState.FAILED, TaskState.TIMED_OUT}),
}

PENDING_STATES = (TaskState.RESERVED, TaskState.SUBMITTED, TaskState.RUNNING)

MISSING_RESULT_REASON = "provider reported success without a result URL"
INTERRUPTED_SUBMIT_REASON = "submission interrupted before the provider accepted it"

Sleep = Callable[[float], Awaitable[None]]


class GenerationTaskOrchestrator:
    """
    Drives generation tasks from reservation to a terminal state.

    Poll loops run as background asyncio tasks; callers may wait on them or
    walk away, and the loop carries on until the reservation is resolved.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        tasks: TaskStore,
        providers: Iterable[GenerationProvider],
        credits_per_second: Mapping[ProviderName, int],
        poll_interval: float,
        max_attempts: int,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.tasks = tasks
        self.providers: dict[ProviderName, GenerationProvider] = {p.name: p for p in providers}
        self.credits_per_second = credits_per_second
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._loops: dict[UUID, asyncio.Task[TaskData]] = {}
        self._submissions: dict[UUID, asyncio.Task[TaskData]] = {}

    # ========================================================================
    # Public API
    # ========================================================================

    def quote(self, request: GenerationRequest) -> int:
        """
        Credits a request will reserve.

        Raises:
            UnsupportedModeError: no provider can serve the request
            InvalidGenerationRequestError: duration not offered by the provider
        """
        provider = self._provider(request.provider)
        require_supported_mode(provider, request)
        return self.credits_per_second[provider.name] * provider.clip_seconds(request)

    async def start(self, account_id: str, request: GenerationRequest) -> TaskData:
        """
        Reserve credits, submit to the provider and start polling.

        Returns the task as it stands after submission: submitted, or
        refunded if the provider rejected it. Reserve and submit run in their
        own asyncio task, so a caller cancelled mid-submit leaves the
        provider's answer to decide the outcome.

        Raises:
            InsufficientCreditsError: balance can't cover the quote
            UnsupportedModeError / InvalidGenerationRequestError: before any reservation
        """
        cost = self.quote(request)
        provider = self._provider(request.provider)
        task_id = uuid4()

        submission = asyncio.create_task(
            self._reserve_and_submit(task_id, account_id, provider, request, cost),
            name=f"submit-{task_id}",
        )
        self._submissions[task_id] = submission
        return await asyncio.shield(submission)

    async def generate(
        self, account_id: str, request: GenerationRequest, timeout: float | None = None
    ) -> TaskData:
        """Start a task and wait for its terminal state."""
        task = await self.start(account_id, request)
        if task.is_terminal:
            return task
        return await self.wait(task.task_id, timeout=timeout)

    async def wait(self, task_id: UUID, timeout: float | None = None) -> TaskData:
        """
        Wait for a task's terminal state.

        Timing out (or cancelling the caller) abandons the wait only; the poll
        loop keeps going.

        Raises:
            TimeoutError: timeout elapsed first
            TaskNotFoundError: no such task
        """
        return await asyncio.wait_for(self.drive(task_id), timeout=timeout)

    async def get_task(self, task_id: UUID, account_id: str | None = None) -> TaskData:
        """
        Current normalized state of a task.

        With account_id, tasks owned by other accounts are reported missing.
        """
        task = await self.tasks.get(task_id)
        if task is None or (account_id is not None and task.account_id != account_id):
            raise TaskNotFoundError(task_id)
        return task

    async def drive(self, task_id: UUID) -> TaskData:
        """
        Bring a task to its terminal state. Safe to call any number of times.

        Terminal tasks return their stored result; in-flight submissions and
        poll loops are awaited; submitted or running tasks without a loop in
        this process resume polling from their stored attempt count.
        """
        submission = self._submissions.get(task_id)
        if submission is not None:
            await asyncio.shield(submission)

        task = await self.get_task(task_id)
        if task.is_terminal:
            return task
        if task.state == TaskState.RESERVED:
            return await self._refund_unsubmitted(task)

        loop = self._loops.get(task_id)
        if loop is None:
            loop = self._schedule(task)
        return await asyncio.shield(loop)

    async def recover_pending(self) -> int:
        """
        Resume every non-terminal task after a restart.

        Tasks still in reserved never got a provider task id, so whether the
        provider has the job is unknown; their credits are returned.
        """
        pending = await self.tasks.list_in_states(PENDING_STATES)
        for task in pending:
            if task.state == TaskState.RESERVED:
                if task.task_id not in self._submissions:
                    await self._refund_unsubmitted(task)
            else:
                self._schedule(task)

        if pending:
            logger.info("pending_tasks_recovered", count=len(pending))
        return len(pending)

    async def shutdown(self) -> None:
        """
        Let in-flight submissions finish, then cancel poll loops.

        recover_pending picks the cancelled loops up on the next start.
        """
        submissions = list(self._submissions.values())
        if submissions:
            await asyncio.gather(*submissions, return_exceptions=True)

        loops = list(self._loops.values())
        for loop in loops:
            loop.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
            logger.info("poll_loops_cancelled", count=len(loops))
        self._loops.clear()

    # ========================================================================
    # Submission
    # ========================================================================

    async def _reserve_and_submit(
        self,
        task_id: UUID,
        account_id: str,
        provider: GenerationProvider,
        request: GenerationRequest,
        cost: int,
    ) -> TaskData:
        try:
            with log_context(task_id=str(task_id), provider=provider.name.value):
                reservation = await self.ledger.reserve(account_id, cost, reference=str(task_id))
                try:
                    task = await self.tasks.create(
                        task_id, account_id, request, cost, reservation.reservation_id
                    )
                except Exception:
                    await self.ledger.refund(reservation.reservation_id)
                    raise

                logger.info(
                    "generation_task_created",
                    account_id=account_id,
                    mode=request.mode.value,
                    credits_reserved=cost,
                )
                return await self._submit(provider, task, request)
        finally:
            # Removed only once the task has left reserved (or never existed)
            self._submissions.pop(task_id, None)

    async def _submit(
        self, provider: GenerationProvider, task: TaskData, request: GenerationRequest
    ) -> TaskData:
        try:
            with trace_operation("provider_submit", provider=provider.name.value):
                provider_task_id = await provider.submit(request)
        except ProviderRejectedError as exc:
            logger.info("generation_submit_rejected", reason=exc.reason, code=exc.code)
            return await self._resolve_unsubmitted(task, exc.reason, TaskOutcome.PROVIDER_REJECTED)
        except Exception as exc:
            logger.exception("generation_submit_error", error=str(exc))
            await self._resolve_unsubmitted(task, str(exc), TaskOutcome.PROVIDER_REJECTED)
            raise

        task = await self._transition(task, TaskState.SUBMITTED, provider_task_id=provider_task_id)
        self._schedule(task)
        return task

    async def _refund_unsubmitted(self, task: TaskData) -> TaskData:
        """Callers check _submissions first; the fresh read then can't be stale."""
        task = await self.get_task(task.task_id)
        if task.state != TaskState.RESERVED:
            return task

        logger.warning("generation_submit_interrupted", task_id=str(task.task_id))
        return await self._resolve_unsubmitted(
            task, INTERRUPTED_SUBMIT_REASON, TaskOutcome.PROVIDER_REJECTED
        )

    async def _resolve_unsubmitted(
        self, task: TaskData, reason: str, outcome: TaskOutcome
    ) -> TaskData:
        """Reserved -> refunded. No polling ever happens for these."""
        if task.reservation_id is not None:
            await self.ledger.refund(task.reservation_id)
        task = await self._transition(
            task, TaskState.REFUNDED, outcome=outcome, failure_reason=reason
        )
        self._record_terminal(task)
        return task

    # ========================================================================
    # Poll loop
    # ========================================================================

    def _schedule(self, task: TaskData) -> asyncio.Task[TaskData]:
        """Start the poll loop for task unless one is already running."""
        loop = self._loops.get(task.task_id)
        if loop is not None and not loop.done():
            return loop

        loop = asyncio.create_task(self._poll(task), name=f"poll-{task.task_id}")
        self._loops[task.task_id] = loop
        loop.add_done_callback(lambda done: self._forget(task.task_id, done))
        return loop

    def _forget(self, task_id: UUID, loop: asyncio.Task[TaskData]) -> None:
        if self._loops.get(task_id) is loop:
            del self._loops[task_id]

    async def _poll(self, task: TaskData) -> TaskData:
        metrics.poll_loops_in_progress.inc()
        try:
            with log_context(task_id=str(task.task_id), provider=task.provider.value):
                try:
                    return await self._poll_until_terminal(task)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.exception("poll_loop_failed", error=str(exc))
                    metrics.record_error(type(exc).__name__, "poll")
                    return await self._abandon(task.task_id, exc)
        finally:
            metrics.poll_loops_in_progress.dec()

    async def _poll_until_terminal(self, task: TaskData) -> TaskData:
        task = await self.get_task(task.task_id)
        if task.is_terminal:
            return task
        if task.result_url:
            # Delivered before a restart or a failed write; nothing left to fetch
            return await self._succeed(task, task.result_url)

        provider = self._provider(task.provider)
        provider_task_id = task.provider_task_id
        if provider_task_id is None:
            raise InvalidTransitionError(task.task_id, task.state.value, "polling")

        while task.poll_attempts < self.max_attempts:
            await self._sleep(self.poll_interval)
            attempt = task.poll_attempts + 1

            try:
                with trace_operation(
                    "provider_fetch_status", provider=provider.name.value, attempt=attempt
                ):
                    status = await provider.fetch_status(provider_task_id)
            except TransientFetchError as exc:
                metrics.record_poll(provider.name.value, "transient_error")
                logger.warning("poll_transient_error", attempt=attempt, reason=exc.reason)
                task = await self.tasks.record_poll(task.task_id, attempt)
                continue

            metrics.record_poll(provider.name.value, status.state.value)
            logger.debug(
                "poll_status", attempt=attempt, provider_state=status.provider_state
            )
            task = await self.tasks.record_poll(task.task_id, attempt)
            if task.state == TaskState.SUBMITTED:
                task = await self._transition(task, TaskState.RUNNING)

            if status.state == NormalizedState.RUNNING:
                continue

            if status.state == NormalizedState.SUCCEEDED:
                if status.result_url:
                    return await self._succeed(task, status.result_url)
                return await self._fail(
                    task, TaskState.FAILED, TaskOutcome.PROVIDER_FAILURE, MISSING_RESULT_REASON
                )

            return await self._fail(
                task, TaskState.FAILED, TaskOutcome.PROVIDER_FAILURE, status.failure_reason
            )

        return await self._fail(
            task,
            TaskState.TIMED_OUT,
            TaskOutcome.TIMEOUT_EXCEEDED,
            f"no terminal status after {task.poll_attempts} attempts",
        )

    async def _succeed(self, task: TaskData, result_url: str) -> TaskData:
        if task.result_url != result_url:
            task = await self.tasks.record_result(task.task_id, result_url)
        if task.reservation_id is not None:
            await self.ledger.commit(task.reservation_id)
        task = await self._transition(task, TaskState.SUCCEEDED, result_url=result_url)
        self._record_terminal(task)
        return task

    async def _fail(
        self, task: TaskData, target: TaskState, outcome: TaskOutcome, reason: str | None
    ) -> TaskData:
        if task.reservation_id is not None:
            await self.ledger.refund(task.reservation_id)
        task = await self._transition(task, target, outcome=outcome, failure_reason=reason)
        self._record_terminal(task)
        return task

    async def _abandon(self, task_id: UUID, error: Exception) -> TaskData:
        """
        Unexpected poll error: finish the task from what the ledger already holds.

        A committed reservation means the video was delivered and its URL
        stored, so the task still succeeds. A refunded one only needs the
        failed state written. A held one is failed and refunded so its
        credits are not left held.
        """
        task = await self.get_task(task_id)
        if task.is_terminal:
            return task

        reason = f"internal error: {error}"
        reservation = None
        if task.reservation_id is not None:
            reservation = await self.ledger.get_reservation(task.reservation_id)

        if reservation is None or reservation.status == ReservationStatus.HELD:
            return await self._fail(task, TaskState.FAILED, TaskOutcome.PROVIDER_FAILURE, reason)

        if reservation.status == ReservationStatus.COMMITTED:
            task = await self._transition(
                task, TaskState.SUCCEEDED, result_url=task.result_url
            )
        else:
            task = await self._transition(
                task,
                TaskState.FAILED,
                outcome=TaskOutcome.PROVIDER_FAILURE,
                failure_reason=reason,
            )
        self._record_terminal(task)
        return task

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _provider(self, name: ProviderName) -> GenerationProvider:
        provider = self.providers.get(name)
        if provider is None:
            raise UnsupportedModeError(name.value, "any")
        return provider

    async def _transition(
        self,
        task: TaskData,
        target: TaskState,
        *,
        provider_task_id: str | None = None,
        outcome: TaskOutcome | None = None,
        result_url: str | None = None,
        failure_reason: str | None = None,
    ) -> TaskData:
        """
        Apply one lifecycle step.

        Raises:
            InvalidTransitionError: step not in the lifecycle, or the stored
                state moved underneath us
        """
        if target not in ALLOWED_TRANSITIONS.get(task.state, frozenset()):
            raise InvalidTransitionError(task.task_id, task.state.value, target.value)

        updated = await self.tasks.transition(
            task.task_id,
            task.state,
            target,
            provider_task_id=provider_task_id,
            outcome=outcome,
            result_url=result_url,
            failure_reason=failure_reason,
        )
        if updated is None:
            current = await self.tasks.get(task.task_id)
            raise InvalidTransitionError(
                task.task_id, current.state.value if current else "missing", target.value
            )

        logger.info(
            "task_state_changed",
            from_state=task.state.value,
            to_state=target.value,
            outcome=outcome.value if outcome else None,
        )
        return updated

    def _record_terminal(self, task: TaskData) -> None:
        duration = (datetime.now(UTC) - task.created_at).total_seconds()
        metrics.record_task_terminal(task.provider.value, task.state.value, duration)
        logger.info(
            "generation_task_finished",
            state=task.state.value,
            outcome=task.outcome.value if task.outcome else None,
            result_url=task.result_url,
            failure_reason=task.failure_reason,
            poll_attempts=task.poll_attempts,
        )
