"""Run coordinator — one PipelineRun from trigger to terminal verdict.

Sequence per run:
    1. Evaluate the trigger (context + eligible tiers)
    2. Register with the concurrency controller (supersedes older runs)
    3. Walk the tier gate, dispatching each eligible tier's jobs in turn
    4. On success under publication conditions, publish terminal-tier artifacts
    5. Emit the final summary
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Awaitable, Callable

from tiergate.config import PipelineConfig, TierGateConfig, parse_duration_seconds
from tiergate.models import ChangeEvent, EventKind, InvalidTrigger
from tiergate.pipeline.concurrency import ConcurrencyController
from tiergate.pipeline.dispatcher import CancellationToken, JobDispatcher
from tiergate.pipeline.gate import (
    AtTier,
    Failed,
    GateState,
    GateTransitionError,
    NotStarted,
    TierGate,
    is_terminal,
    verdict_for,
)
from tiergate.pipeline.models import (
    BuildArtifact,
    Job,
    JobResult,
    PipelineRun,
    RunVerdict,
    SkipReason,
    TierResult,
)
from tiergate.pipeline.publisher import Publisher, render_summary
from tiergate.pipeline.registry import RunRegistry
from tiergate.pipeline.trigger import TriggerEvaluator, manual_event

logger = logging.getLogger("tiergate.pipeline.coordinator")

RunCompleteCallback = Callable[[PipelineRun], Awaitable[None]]

_FINISHED_CAPACITY = 256


class RunCoordinator:
    """Owns the lifecycle of pipeline runs for one configuration snapshot.

    Usage:
        coordinator = RunCoordinator(config, dispatcher, controller, publisher)
        runs = await coordinator.handle_event(event)
    """

    def __init__(
        self,
        config: TierGateConfig,
        dispatcher: JobDispatcher,
        controller: ConcurrencyController,
        publisher: Publisher,
        *,
        registry: RunRegistry | None = None,
    ):
        self._config = config
        self._dispatcher = dispatcher
        self._controller = controller
        self._publisher = publisher
        self._registry = registry
        self._evaluators = {
            name: TriggerEvaluator(name, pipeline) for name, pipeline in config.pipelines.items()
        }
        self._on_complete: list[RunCompleteCallback] = []
        # Recent runs a chained event may continue; older ones come from the registry
        self._finished: OrderedDict[str, PipelineRun] = OrderedDict()

    @property
    def config(self) -> TierGateConfig:
        return self._config

    def on_run_complete(self, callback: RunCompleteCallback) -> None:
        """Register a callback invoked with every run that reaches a verdict."""
        self._on_complete.append(callback)

    # ── Entry Points ─────────────────────────────────────────────────────────

    async def handle_event(self, event: ChangeEvent) -> list[PipelineRun]:
        """Run every pipeline the event applies to, concurrently."""
        if event.kind == EventKind.MANUAL and event.pipeline:
            if event.pipeline not in self._config.pipelines:
                raise InvalidTrigger(f"Unknown pipeline '{event.pipeline}'")
            names = [event.pipeline]
        elif event.upstream_run_id:
            # Chained events continue the pipeline that produced the upstream run
            names = [(await self._upstream(event.upstream_run_id)).pipeline_name]
        else:
            names = list(self._config.pipelines)

        return list(await asyncio.gather(*(self.execute(name, event) for name in names)))

    async def invoke_manual(
        self, pipeline: str, ref: str, *, changed_paths: list[str] | None = None
    ) -> PipelineRun:
        """Manual invocation surface: run one named pipeline, bypassing filters."""
        if pipeline not in self._config.pipelines:
            raise InvalidTrigger(f"Unknown pipeline '{pipeline}'")
        return await self.execute(pipeline, manual_event(pipeline, ref, changed_paths=changed_paths))

    async def execute(self, pipeline_name: str, event: ChangeEvent) -> PipelineRun:
        """Execute one pipeline for one event and return the finished run."""
        pipeline = self._config.get_pipeline(pipeline_name)
        if pipeline is None:
            raise InvalidTrigger(f"Unknown pipeline '{pipeline_name}'")

        evaluation = self._evaluators[pipeline_name].evaluate(event)
        ctx = evaluation.context
        if ctx.is_chained:
            await self._upstream(ctx.upstream_run_id)  # type: ignore[arg-type]

        run = PipelineRun(
            run_id=f"run-{uuid.uuid4().hex[:12]}",
            pipeline_name=pipeline_name,
            context=ctx,
            concurrency_key=pipeline.concurrency.key_for(pipeline_name, ctx),
            delivery_id=event.delivery_id,
        )
        if evaluation.skipped:
            return await self._skip(run, pipeline, evaluation.skip_reason)

        token = CancellationToken()
        previous = await self._controller.register(
            run, token, grace=parse_duration_seconds(pipeline.concurrency.supersede_grace)
        )
        # The key is persisted with one live run: the superseded one first
        if previous is not None:
            await self._persist(previous)

        # A run force-released while waiting for the key stays superseded
        if not run.is_terminal:
            run.verdict = RunVerdict.RUNNING
        run.started_at = datetime.now(timezone.utc)
        logger.info(
            "Started pipeline '%s' run %s (%s %s, key=%s, eligible=%s)",
            pipeline_name,
            run.run_id,
            ctx.kind.value,
            ctx.ref,
            run.concurrency_key,
            evaluation.eligible_ordinals,
        )
        if self._registry:
            await self._registry.create_run(run)

        gate = TierGate(pipeline.tiers, evaluation.eligible_ordinals)
        try:
            state = await self._walk(run, pipeline, gate, token)
        except Exception:
            logger.exception("Run %s aborted by an internal error", run.run_id)
            state = Failed(run.current_tier or 0)
            run.failed_tier = run.current_tier

        verdict = await self._controller.finish(run, verdict_for(state))
        if verdict == RunVerdict.SUPERSEDED:
            await self._mark_superseded(run, pipeline)

        if verdict == RunVerdict.SUCCEEDED:
            artifacts = self._terminal_artifacts(run, pipeline)
            records = await self._publisher.publish(run, pipeline, artifacts)
            if records and self._registry:
                await self._registry.record_publications(records)

        return await self._conclude(run, pipeline)

    async def _skip(
        self, run: PipelineRun, pipeline: PipelineConfig, reason: str | None
    ) -> PipelineRun:
        """Conclude a run no tier is eligible for. It never takes the concurrency key."""
        run.verdict = RunVerdict.SKIPPED
        run.skip_reason = reason
        run.started_at = run.completed_at = datetime.now(timezone.utc)
        if self._registry:
            await self._registry.create_run(run)
        for tier in pipeline.tiers:
            await self._record_tier(
                run, TierResult.skipped(tier.ordinal, tier.name, SkipReason.INELIGIBLE)
            )
        return await self._conclude(run, pipeline)

    async def _conclude(self, run: PipelineRun, pipeline: PipelineConfig) -> PipelineRun:
        summary = self._publisher.build_summary(run, pipeline)
        run.summary = summary.model_dump(mode="json")
        await self._persist(run)

        log = logger.warning if run.verdict == RunVerdict.FAILED else logger.info
        log("%s", render_summary(summary))

        if self.chained_event(run) is not None:
            self._finished[run.run_id] = run
            while len(self._finished) > _FINISHED_CAPACITY:
                self._finished.popitem(last=False)
        await self._notify_complete(run)
        return run

    # ── Tier Walk ────────────────────────────────────────────────────────────

    async def _walk(
        self,
        run: PipelineRun,
        pipeline: PipelineConfig,
        gate: TierGate,
        token: CancellationToken,
    ) -> GateState:
        state: GateState = NotStarted()
        transition = gate.start(state)
        while True:
            for skipped in transition.skipped:
                await self._record_tier(run, skipped)
            state = transition.state
            if is_terminal(state):
                break
            if not isinstance(state, AtTier):
                raise GateTransitionError(f"Gate left the run in non-tier state {state!r}")

            # Cancellation wins over a tier that is about to start
            if not await self._controller.admit_tier(run):
                state = gate.cancel(state).state
                break

            tier = gate.tier(state.ordinal)
            run.current_tier = tier.ordinal
            await self._persist(run)

            result = await self._dispatcher.dispatch(
                run.run_id,
                tier,
                run.context,
                run_token=token,
                on_transition=self._job_transition,
            )
            await self._record_tier(run, result)
            run.cost_units += self._dispatcher.pool.cost(
                job.runner_class for job in result.jobs for _ in range(job.attempts)
            )
            transition = gate.advance(state, result)

        if isinstance(state, Failed):
            run.failed_tier = state.ordinal
        run.current_tier = None
        return state

    async def _record_tier(self, run: PipelineRun, result: TierResult) -> None:
        run.record_tier(result)
        if self._registry:
            await self._registry.record_tier_result(run.run_id, result)

    async def _job_transition(self, job: Job) -> None:
        logger.debug(
            "Job '%s' tier %d -> %s (run %s)",
            job.id,
            job.tier_ordinal,
            job.result.value,
            job.run_id,
        )
        if self._registry:
            await self._registry.upsert_job(job)

    async def _mark_superseded(self, run: PipelineRun, pipeline: PipelineConfig) -> None:
        """Every tier without a result becomes skipped due to supersession."""
        for tier in pipeline.tiers:
            if run.tier_result(tier.ordinal) is None:
                await self._record_tier(
                    run, TierResult.skipped(tier.ordinal, tier.name, SkipReason.SUPERSEDED)
                )
        run.failed_tier = None
        run.current_tier = None

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _terminal_artifacts(self, run: PipelineRun, pipeline: PipelineConfig) -> list[BuildArtifact]:
        result = run.tier_result(pipeline.terminal_tier.ordinal)
        if result is None:
            return []
        return [
            artifact
            for job in result.jobs
            if job.result == JobResult.SUCCESS
            for artifact in job.artifacts
        ]

    async def _upstream(self, upstream_run_id: str) -> PipelineRun:
        """The succeeded run a chained event continues. Raises InvalidTrigger."""
        upstream = self._finished.get(upstream_run_id)
        if upstream is None and self._registry:
            upstream = await self._registry.get_run(upstream_run_id)
        if upstream is None:
            raise InvalidTrigger(f"Upstream run '{upstream_run_id}' not found")
        if upstream.verdict != RunVerdict.SUCCEEDED:
            raise InvalidTrigger(
                f"Upstream run '{upstream_run_id}' did not succeed ({upstream.verdict.value})"
            )
        return upstream

    async def _persist(self, run: PipelineRun) -> None:
        if self._registry:
            await self._registry.update_run(run)

    async def _notify_complete(self, run: PipelineRun) -> None:
        for callback in self._on_complete:
            try:
                await callback(run)
            except Exception:
                logger.exception("Run-complete callback failed for run %s", run.run_id)

    def chained_event(self, run: PipelineRun) -> ChangeEvent | None:
        """The terminal-tier event to enqueue after a successful proposed change."""
        pipeline = self._config.get_pipeline(run.pipeline_name)
        if (
            pipeline is None
            or not pipeline.chain_on_success
            or run.verdict != RunVerdict.SUCCEEDED
            or run.context.kind != EventKind.PROPOSED_CHANGE
            or run.context.is_chained
        ):
            return None
        return ChangeEvent(
            kind=EventKind.PROPOSED_CHANGE,
            ref=run.context.ref,
            changed_paths=sorted(run.context.changed_paths),
            is_draft=run.context.is_draft,
            upstream_run_id=run.run_id,
        )
