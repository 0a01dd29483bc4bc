"""Job dispatcher — runs one tier's jobs against the runner pool.

Key exports:
    CancellationToken — explicit cooperative cancellation, linkable parent → child
    JobExecutor — protocol for the job execution collaborator
    JobDispatcher — submits a tier's jobs, applies fail-fast policy, aggregates
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from tiergate.config import FailFastPolicy, JobSpec, TierDefinition, TimeoutPolicy
from tiergate.models import TriggerContext
from tiergate.pipeline.models import (
    ExecutionResult,
    Job,
    JobOutcome,
    JobResult,
    SkipReason,
    TierAggregate,
    TierResult,
)
from tiergate.pipeline.runners import RunnerClass, RunnerPool, UnknownRunnerClass

logger = logging.getLogger("tiergate.pipeline.dispatcher")


# ── Cancellation ─────────────────────────────────────────────────────────────


class CancellationToken:
    """Cooperative cancellation signal.

    Cancelling a token cancels all of its children. A job executor receives a
    token and is expected to stop when it fires, but nothing assumes it does so
    promptly.
    """

    def __init__(self, parent: CancellationToken | None = None):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._children: list[CancellationToken] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason or "canceled")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "canceled") -> bool:
        """Request cancellation. Returns False if already cancelled."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)
        return True

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)


# ── Collaborator Protocols ───────────────────────────────────────────────────


class JobExecutor(Protocol):
    """Executes one job on a runner class. Must honour the token best-effort."""

    async def __call__(
        self,
        job: Job,
        spec: JobSpec,
        runner: RunnerClass,
        token: CancellationToken,
        *,
        context: TriggerContext,
    ) -> JobOutcome:
        ...


TransitionCallback = Callable[[Job], Awaitable[None]]


# ── Dispatcher ───────────────────────────────────────────────────────────────


class JobDispatcher:
    """Submits a tier's jobs and computes the tier aggregate.

    Usage:
        dispatcher = JobDispatcher(executor, RunnerPool(config.runners))
        result = await dispatcher.dispatch(run_id, tier, ctx, run_token=token)
    """

    def __init__(self, executor: JobExecutor, pool: RunnerPool):
        self._executor = executor
        self.pool = pool
        # Jobs whose results are no longer wanted but which may still report
        self._abandoned: set[asyncio.Task] = set()

    async def dispatch(
        self,
        run_id: str,
        tier: TierDefinition,
        context: TriggerContext,
        *,
        run_token: CancellationToken,
        on_transition: TransitionCallback | None = None,
    ) -> TierResult:
        """Run every job of ``tier`` and return its TierResult.

        Returns early (without waiting for siblings) when a ``stop_on_first``
        tier sees a failing job, or when ``run_token`` is cancelled.
        """
        tier_token = run_token.child()
        jobs: dict[str, Job] = {}
        tasks: dict[asyncio.Task, Job] = {}

        for spec in tier.jobs:
            jobs[spec.id] = Job(
                id=spec.id,
                run_id=run_id,
                tier_ordinal=tier.ordinal,
                runner_class=tier.job_runner_class(spec),
                timeout=tier.job_timeout(spec),
            )

        for spec in tier.jobs:
            job = jobs[spec.id]
            if not spec.selected(context):
                await self._settle(
                    job,
                    JobResult.SKIPPED,
                    detail="not selected by changed paths",
                    on_transition=on_transition,
                )
                continue
            task = asyncio.create_task(
                self._run_job(job, spec, tier, context, tier_token.child(), on_transition),
                name=f"{run_id}:{tier.ordinal}:{spec.id}",
            )
            tasks[task] = job

        if not tasks:
            logger.info(
                "Tier %d '%s' has no selected jobs (run %s)", tier.ordinal, tier.name, run_id
            )
            return TierResult(
                ordinal=tier.ordinal,
                name=tier.name,
                aggregate=TierAggregate.SKIPPED,
                jobs=tuple(j.model_copy() for j in jobs.values()),
                reason=SkipReason.NO_JOBS_SELECTED,
            )

        logger.info(
            "Tier %d '%s' dispatched %d job(s) [%s] (run %s)",
            tier.ordinal,
            tier.name,
            len(tasks),
            tier.fail_fast.value,
            run_id,
        )

        pending = set(tasks)
        tripped: Job | None = None
        cancel_waiter = asyncio.create_task(run_token.wait())
        try:
            while pending:
                done, _ = await asyncio.wait(
                    pending | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if cancel_waiter in done:
                    break
                pending -= done
                if tier.fail_fast == FailFastPolicy.STOP_ON_FIRST:
                    tripped = next((tasks[t] for t in done if tasks[t].result.is_failing), None)
                    if tripped:
                        break
        finally:
            cancel_waiter.cancel()

        superseded = run_token.cancelled
        if pending:
            reason = run_token.reason if superseded else f"sibling job '{tripped.id}' failed"
            tier_token.cancel(reason or "canceled")
            for task in pending:
                await self._settle(
                    tasks[task],
                    JobResult.CANCELED,
                    detail=reason or "canceled",
                    on_transition=on_transition,
                )
                self._abandon(task)

        snapshot = tuple(j.model_copy() for j in jobs.values())
        if superseded and tripped is None:
            logger.info(
                "Tier %d '%s' interrupted: %s (run %s)",
                tier.ordinal,
                tier.name,
                run_token.reason,
                run_id,
            )
            return TierResult(
                ordinal=tier.ordinal,
                name=tier.name,
                aggregate=TierAggregate.SKIPPED,
                jobs=snapshot,
                reason=SkipReason.SUPERSEDED,
            )

        if tripped is not None:
            aggregate = (
                TierAggregate.FAILURE
                if tripped.result == JobResult.FAILURE
                else TierAggregate.INFRA_ERROR
            )
        else:
            aggregate = aggregate_results([j.result for j in snapshot])

        logger.info(
            "Tier %d '%s' aggregate=%s (run %s)",
            tier.ordinal,
            tier.name,
            aggregate.value,
            run_id,
        )
        return TierResult(
            ordinal=tier.ordinal,
            name=tier.name,
            aggregate=aggregate,
            jobs=snapshot,
            reason=SkipReason.NO_JOBS_SELECTED if aggregate == TierAggregate.SKIPPED else None,
        )

    async def drain(self) -> None:
        """Wait for abandoned job tasks to wind down."""
        if self._abandoned:
            await asyncio.gather(*list(self._abandoned), return_exceptions=True)

    # ── Internals ────────────────────────────────────────────────────────────

    async def _run_job(
        self,
        job: Job,
        spec: JobSpec,
        tier: TierDefinition,
        context: TriggerContext,
        token: CancellationToken,
        on_transition: TransitionCallback | None,
    ) -> None:
        max_attempts = 1 + tier.infra_retries

        try:
            runner = self.pool.resolve(job.runner_class)
        except UnknownRunnerClass as exc:
            await self._settle(
                job, JobResult.INFRA_ERROR, detail=str(exc), on_transition=on_transition
            )
            return

        while not job.is_terminal and not token.cancelled:
            job.attempts += 1
            job.result = JobResult.RUNNING
            if job.started_at is None:
                job.started_at = datetime.now(timezone.utc)
            await self._notify(job, on_transition)

            outcome = await self._execute(job, spec, runner, context, token.child())
            result = map_outcome(outcome.result, tier.timeout_policy)

            if (
                result == JobResult.INFRA_ERROR
                and job.attempts < max_attempts
                and not token.cancelled
            ):
                logger.warning(
                    "Job '%s' infra error (attempt %d/%d), retrying: %s",
                    job.id,
                    job.attempts,
                    max_attempts,
                    outcome.detail,
                )
                continue

            await self._settle(job, result, outcome=outcome, on_transition=on_transition)

    async def _execute(
        self,
        job: Job,
        spec: JobSpec,
        runner: RunnerClass,
        context: TriggerContext,
        token: CancellationToken,
    ) -> JobOutcome:
        if not runner.available:
            return JobOutcome(
                result=ExecutionResult.INFRA_ERROR,
                detail=f"runner class '{runner.name}' is unavailable",
            )
        try:
            return await asyncio.wait_for(
                self._executor(job, spec, runner, token, context=context),
                timeout=job.timeout,
            )
        except asyncio.TimeoutError:
            token.cancel("timeout")
            return JobOutcome(
                result=ExecutionResult.TIMEOUT,
                detail=f"exceeded timeout of {job.timeout:g}s",
            )
        except Exception as exc:
            logger.exception("Executor raised for job '%s' (run %s)", job.id, job.run_id)
            return JobOutcome(result=ExecutionResult.INFRA_ERROR, detail=f"executor error: {exc}")

    async def _settle(
        self,
        job: Job,
        result: JobResult,
        *,
        outcome: JobOutcome | None = None,
        detail: str | None = None,
        on_transition: TransitionCallback | None = None,
    ) -> bool:
        """Move a job to a terminal result. A second result is discarded."""
        if job.is_terminal:
            logger.debug(
                "Discarding late result %s for job '%s' (already %s)",
                result.value,
                job.id,
                job.result.value,
            )
            return False

        job.result = result
        job.completed_at = datetime.now(timezone.utc)
        if outcome is not None:
            job.detail = outcome.detail
            job.log_url = outcome.log_url
            job.artifacts = list(outcome.artifacts)
        if detail is not None:
            job.detail = detail
        await self._notify(job, on_transition)
        return True

    async def _notify(self, job: Job, on_transition: TransitionCallback | None) -> None:
        if on_transition is None:
            return
        try:
            await on_transition(job.model_copy())
        except Exception:
            logger.exception("Job transition callback failed for '%s'", job.id)

    def _abandon(self, task: asyncio.Task) -> None:
        self._abandoned.add(task)
        task.add_done_callback(self._abandoned.discard)


# ── Helpers ──────────────────────────────────────────────────────────────────


def map_outcome(result: ExecutionResult, timeout_policy: TimeoutPolicy) -> JobResult:
    """Translate an executor outcome into a terminal job result."""
    if result == ExecutionResult.TIMEOUT:
        if timeout_policy == TimeoutPolicy.INFRA_ERROR:
            return JobResult.INFRA_ERROR
        return JobResult.FAILURE
    return JobResult(result.value)


def aggregate_results(results: list[JobResult]) -> TierAggregate:
    """Aggregate for a tier whose jobs all reached a terminal state."""
    if all(r == JobResult.SKIPPED for r in results):
        return TierAggregate.SKIPPED
    if any(r == JobResult.FAILURE for r in results):
        return TierAggregate.FAILURE
    if all(r in (JobResult.SUCCESS, JobResult.SKIPPED) for r in results):
        return TierAggregate.SUCCESS
    return TierAggregate.INFRA_ERROR
