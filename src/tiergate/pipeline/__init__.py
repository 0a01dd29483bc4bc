"""Tiered gating engine.

Turns a change event into one PipelineRun per pipeline: eligible tiers run in
order, each tier's jobs run concurrently on their runner class, and a failing
tier stops the run before more expensive tiers commit resources.

Key exports:
    RunCoordinator — Drives one run from trigger to verdict
    TriggerEvaluator — Event → eligible tier set
    TierGate — Tier-to-tier state machine
    JobDispatcher — Runs one tier's jobs, applies fail-fast policy
    ConcurrencyController — One active run per concurrency key
    Publisher — Run summaries and artifact publication
    RunRegistry — SQLite persistence
"""

from tiergate.pipeline.concurrency import ConcurrencyController
from tiergate.pipeline.coordinator import RunCompleteCallback, RunCoordinator
from tiergate.pipeline.dispatcher import (
    CancellationToken,
    JobDispatcher,
    JobExecutor,
    TransitionCallback,
    aggregate_results,
    map_outcome,
)
from tiergate.pipeline.gate import (
    AtTier,
    Failed,
    GateState,
    GateTransitionError,
    NotStarted,
    Skipped,
    Succeeded,
    Superseded,
    TierGate,
    Transition,
    verdict_for,
)
from tiergate.pipeline.models import (
    BuildArtifact,
    ExecutionResult,
    Job,
    JobOutcome,
    JobResult,
    PipelineRun,
    PublicationRecord,
    RunVerdict,
    SkipReason,
    TierAggregate,
    TierResult,
)
from tiergate.pipeline.publisher import (
    ArtifactStore,
    Publisher,
    RunSummary,
    StorageError,
    render_summary,
)
from tiergate.pipeline.registry import RunRegistry
from tiergate.pipeline.runners import RunnerClass, RunnerPool, UnknownRunnerClass
from tiergate.pipeline.trigger import (
    TriggerEvaluation,
    TriggerEvaluator,
    event_from_github,
    manual_event,
    parse_event,
)

__all__ = [
    # Coordinator
    "RunCoordinator",
    "RunCompleteCallback",
    # Trigger
    "TriggerEvaluator",
    "TriggerEvaluation",
    "parse_event",
    "event_from_github",
    "manual_event",
    # Gate
    "TierGate",
    "Transition",
    "GateState",
    "GateTransitionError",
    "NotStarted",
    "AtTier",
    "Succeeded",
    "Failed",
    "Skipped",
    "Superseded",
    "verdict_for",
    # Dispatcher
    "JobDispatcher",
    "JobExecutor",
    "TransitionCallback",
    "CancellationToken",
    "aggregate_results",
    "map_outcome",
    # Concurrency
    "ConcurrencyController",
    # Runners
    "RunnerPool",
    "RunnerClass",
    "UnknownRunnerClass",
    # Publication
    "Publisher",
    "ArtifactStore",
    "RunSummary",
    "StorageError",
    "render_summary",
    # Registry
    "RunRegistry",
    # Runtime state models
    "PipelineRun",
    "RunVerdict",
    "TierResult",
    "TierAggregate",
    "SkipReason",
    "Job",
    "JobResult",
    "JobOutcome",
    "ExecutionResult",
    "BuildArtifact",
    "PublicationRecord",
]
