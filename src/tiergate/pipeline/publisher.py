"""Artifact and status publisher.

Emits the tier-by-tier verdict of a finished run and, for a successful run on
a publication-eligible ref, hands terminal-tier build products to the storage
collaborators. Publication never changes the pipeline verdict.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from pydantic import BaseModel, Field

from tiergate.config import ArtifactKind, ArtifactTarget, PipelineConfig
from tiergate.models import EventKind, TierGateError
from tiergate.pipeline.models import (
    BuildArtifact,
    JobResult,
    PipelineRun,
    PublicationRecord,
    RunVerdict,
    TierAggregate,
)

logger = logging.getLogger("tiergate.pipeline.publisher")


class StorageError(TierGateError):
    """The storage collaborator rejected or failed an artifact upload."""


class ArtifactStore(Protocol):
    """Storage collaborator for one ArtifactKind."""

    async def put(self, artifact: BuildArtifact, target: ArtifactTarget, *, draft: bool) -> None:
        """Store ``artifact`` at ``target``. Raises StorageError on failure."""
        ...


# ── Summary ──────────────────────────────────────────────────────────────────


class JobLine(BaseModel):
    id: str
    result: JobResult
    detail: str = ""
    log_url: str | None = None


class TierLine(BaseModel):
    ordinal: int
    name: str
    status: str  # Tier aggregate, or "not run"
    reason: str | None = None
    jobs: list[JobLine] = Field(default_factory=list)


class RunSummary(BaseModel):
    """Structured final status of a run. The sole operator-facing contract."""

    run_id: str
    pipeline: str
    kind: EventKind
    ref: str
    verdict: RunVerdict
    failed_tier: int | None = None
    failed_tier_name: str | None = None
    skip_reason: str | None = None
    failing_jobs: list[JobLine] = Field(default_factory=list)
    infra_only: bool = False  # Failure was infrastructure, re-run rather than fix
    tiers: list[TierLine] = Field(default_factory=list)
    cost_units: float = 0.0
    publications: list[PublicationRecord] = Field(default_factory=list)


class Publisher:
    """Builds run summaries and publishes terminal-tier artifacts."""

    def __init__(self, stores: Mapping[ArtifactKind, ArtifactStore] | None = None):
        self._stores = dict(stores or {})

    # ── Status ───────────────────────────────────────────────────────────────

    def build_summary(self, run: PipelineRun, pipeline: PipelineConfig) -> RunSummary:
        failed = run.tier_result(run.failed_tier) if run.failed_tier else None
        failing = [
            self._job_line(run, job, pipeline)
            for job in (failed.failing_jobs if failed else [])
        ]

        tiers: list[TierLine] = []
        for tier in pipeline.tiers:
            result = run.tier_result(tier.ordinal)
            if result is None:
                tiers.append(TierLine(ordinal=tier.ordinal, name=tier.name, status="not run"))
                continue
            tiers.append(
                TierLine(
                    ordinal=tier.ordinal,
                    name=tier.name,
                    status=result.aggregate.value,
                    reason=result.reason.value if result.reason else None,
                    jobs=[self._job_line(run, job, pipeline) for job in result.jobs],
                )
            )

        return RunSummary(
            run_id=run.run_id,
            pipeline=run.pipeline_name,
            kind=run.context.kind,
            ref=run.context.ref,
            verdict=run.verdict,
            failed_tier=run.failed_tier,
            failed_tier_name=failed.name if failed else None,
            skip_reason=run.skip_reason,
            failing_jobs=failing,
            infra_only=bool(failed and failed.aggregate == TierAggregate.INFRA_ERROR),
            tiers=tiers,
            cost_units=run.cost_units,
            publications=list(run.publications),
        )

    def _job_line(self, run: PipelineRun, job: Any, pipeline: PipelineConfig) -> JobLine:
        log_url = job.log_url
        if log_url is None and pipeline.log_url_template:
            log_url = pipeline.log_url_template.format(
                run_id=run.run_id, tier=job.tier_ordinal, job=job.id
            )
        return JobLine(id=job.id, result=job.result, detail=job.detail, log_url=log_url)

    # ── Artifacts ────────────────────────────────────────────────────────────

    def publication_eligible(self, run: PipelineRun, pipeline: PipelineConfig) -> bool:
        return run.verdict == RunVerdict.SUCCEEDED and pipeline.publication.eligible(run.context)

    async def publish(
        self,
        run: PipelineRun,
        pipeline: PipelineConfig,
        artifacts: list[BuildArtifact],
    ) -> list[PublicationRecord]:
        """Hand artifacts to storage. At most once per run.

        Tag-triggered runs stage artifacts as drafts for manual promotion.
        Failures are recorded on the run but never change its verdict.
        """
        if run.publications:
            logger.warning("Run %s already published, ignoring repeat request", run.run_id)
            return []
        if not self.publication_eligible(run, pipeline):
            logger.info(
                "Run %s (%s %s) is not publication-eligible",
                run.run_id,
                run.context.kind.value,
                run.context.ref,
            )
            return []

        draft = run.context.kind == EventKind.TAG
        records: list[PublicationRecord] = []
        for target in pipeline.publication.targets:
            store = self._stores.get(target.kind)
            for artifact in artifacts:
                record = PublicationRecord(
                    run_id=run.run_id, artifact=artifact.name, target=target, draft=draft
                )
                if store is None:
                    record.error = f"no storage collaborator for '{target.kind.value}'"
                    logger.error("Run %s: %s", run.run_id, record.error)
                else:
                    try:
                        await store.put(artifact, target, draft=draft)
                        record.success = True
                    except StorageError as exc:
                        record.error = str(exc)
                        logger.error(
                            "Run %s: publishing '%s' to %s failed: %s",
                            run.run_id,
                            artifact.name,
                            target.destination,
                            exc,
                        )
                    except Exception as exc:
                        record.error = f"unexpected storage error: {exc}"
                        logger.exception(
                            "Run %s: publishing '%s' to %s raised",
                            run.run_id,
                            artifact.name,
                            target.destination,
                        )
                records.append(record)

        run.publications.extend(records)
        ok = sum(1 for r in records if r.success)
        logger.info(
            "Run %s published %d/%d artifact(s)%s",
            run.run_id,
            ok,
            len(records),
            " as drafts" if draft else "",
        )
        return records


def render_summary(summary: RunSummary) -> str:
    """Human-readable status. The first failing tier comes first."""
    lines: list[str] = []
    head = f"Pipeline '{summary.pipeline}' run {summary.run_id}: {summary.verdict.value.upper()}"
    if summary.failed_tier is not None:
        head += f" at tier {summary.failed_tier} ({summary.failed_tier_name})"
    lines.append(head)
    lines.append(f"  trigger: {summary.kind.value} {summary.ref}")
    if summary.skip_reason:
        lines.append(f"  skipped: {summary.skip_reason}")

    if summary.failed_tier is not None:
        if summary.infra_only:
            lines.append("  infrastructure error: re-run the pipeline, no code change indicated")
        for job in summary.failing_jobs:
            line = f"  FAILED {job.id}: {job.result.value}"
            if job.detail:
                line += f" ({job.detail})"
            if job.log_url:
                line += f" logs: {job.log_url}"
            lines.append(line)

    for tier in summary.tiers:
        status = tier.status
        if tier.reason:
            status += f" [{tier.reason}]"
        lines.append(f"  tier {tier.ordinal} {tier.name}: {status}")

    lines.append(f"  cost units: {summary.cost_units:g}")
    for pub in summary.publications:
        state = "ok" if pub.success else f"failed ({pub.error})"
        mode = " draft" if pub.draft else ""
        lines.append(
            f"  published{mode} {pub.artifact} -> {pub.target.kind.value}:"
            f"{pub.target.destination}: {state}"
        )
    return "\n".join(lines)
