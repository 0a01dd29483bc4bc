"""Pipeline runtime state models.

Key exports:
    Enums: JobResult, TierAggregate, RunVerdict, SkipReason, ExecutionResult
    Runtime state: Job, TierResult, PipelineRun
    Collaborator payloads: JobOutcome, BuildArtifact, PublicationRecord
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from tiergate.config import ArtifactTarget
from tiergate.models import TriggerContext


# ── Enums ────────────────────────────────────────────────────────────────────


class JobResult(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    INFRA_ERROR = "infra_error"
    CANCELED = "canceled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobResult.PENDING, JobResult.RUNNING)

    @property
    def is_failing(self) -> bool:
        return self in (JobResult.FAILURE, JobResult.INFRA_ERROR)


class ExecutionResult(str, Enum):
    """What the job execution collaborator reports back."""

    SUCCESS = "success"
    FAILURE = "failure"
    INFRA_ERROR = "infra_error"
    TIMEOUT = "timeout"


class TierAggregate(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    INFRA_ERROR = "infra_error"
    SKIPPED = "skipped"

    @property
    def is_failing(self) -> bool:
        return self in (TierAggregate.FAILURE, TierAggregate.INFRA_ERROR)


class SkipReason(str, Enum):
    """Why a tier produced no verdict of its own."""

    INELIGIBLE = "ineligible"
    SUPERSEDED = "superseded"
    NO_JOBS_SELECTED = "no_jobs_selected"


class RunVerdict(str, Enum):
    """Pipeline run lifecycle states. The last four are terminal."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunVerdict.PENDING, RunVerdict.RUNNING)


# ── Collaborator Payloads ────────────────────────────────────────────────────


class BuildArtifact(BaseModel):
    """A build product handed to storage on terminal-tier success."""

    model_config = {"frozen": True}

    name: str
    uri: str  # Local path or remote URI the storage collaborator can read
    job_id: str | None = None


class JobOutcome(BaseModel):
    """Result reported by a job executor."""

    result: ExecutionResult
    detail: str = ""
    log_url: str | None = None
    artifacts: list[BuildArtifact] = Field(default_factory=list)


class PublicationRecord(BaseModel):
    """Outcome of handing one artifact to one target."""

    run_id: str
    artifact: str
    target: ArtifactTarget
    draft: bool = False
    success: bool = False
    error: str | None = None
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Runtime State ────────────────────────────────────────────────────────────


class Job(BaseModel):
    """Runtime state of one job within a tier."""

    id: str
    run_id: str
    tier_ordinal: int
    runner_class: str
    timeout: float
    result: JobResult = JobResult.PENDING
    attempts: int = 0
    detail: str = ""
    log_url: str | None = None
    artifacts: list[BuildArtifact] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.result.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class TierResult(BaseModel):
    """Aggregate outcome of one tier. Computed once, never modified."""

    model_config = {"frozen": True}

    ordinal: int
    name: str
    aggregate: TierAggregate
    jobs: tuple[Job, ...] = ()
    reason: SkipReason | None = None
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failing_jobs(self) -> list[Job]:
        return [j for j in self.jobs if j.result.is_failing]

    @property
    def executed(self) -> bool:
        """True if at least one job was actually started."""
        return any(j.attempts > 0 for j in self.jobs)

    @classmethod
    def skipped(cls, ordinal: int, name: str, reason: SkipReason) -> TierResult:
        return cls(ordinal=ordinal, name=name, aggregate=TierAggregate.SKIPPED, reason=reason)


class PipelineRun(BaseModel):
    """Runtime state of one pipeline execution for one triggering event."""

    run_id: str
    pipeline_name: str
    context: TriggerContext
    concurrency_key: str
    delivery_id: str | None = None

    verdict: RunVerdict = RunVerdict.PENDING
    current_tier: int | None = None
    tiers: list[TierResult] = Field(default_factory=list)
    failed_tier: int | None = None
    cost_units: float = 0.0
    skip_reason: str | None = None  # Why no tier was eligible

    publications: list[PublicationRecord] = Field(default_factory=list)
    summary: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.verdict.is_terminal

    def tier_result(self, ordinal: int) -> TierResult | None:
        for result in self.tiers:
            if result.ordinal == ordinal:
                return result
        return None

    def record_tier(self, result: TierResult) -> None:
        """Append a tier result. Each ordinal is recorded once."""
        if self.tier_result(result.ordinal) is not None:
            raise ValueError(
                f"Run {self.run_id}: tier {result.ordinal} result already recorded"
            )
        self.tiers.append(result)

    @property
    def jobs(self) -> list[Job]:
        return [job for tier in self.tiers for job in tier.jobs]
