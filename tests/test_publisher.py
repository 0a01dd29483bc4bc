"""Tests for run summaries and terminal-tier artifact publication."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import make_config, make_pipeline
from tiergate.config import ArtifactKind
from tiergate.models import EventKind, TriggerContext
from tiergate.pipeline.models import (
    BuildArtifact,
    Job,
    JobResult,
    PipelineRun,
    RunVerdict,
    SkipReason,
    TierAggregate,
    TierResult,
)
from tiergate.pipeline.publisher import Publisher, StorageError, render_summary

PIPELINE = make_config(
    {"ci": make_pipeline(log_url_template="https://ci.example/{run_id}/{tier}/{job}")}
).pipelines["ci"]

ARTIFACTS = [BuildArtifact(name="widgets.tar.gz", uri="/tmp/widgets.tar.gz", job_id="package")]


def make_run(kind=EventKind.PUSH, ref="main", verdict=RunVerdict.SUCCEEDED, **overrides):
    defaults: dict = dict(
        run_id="run-1",
        pipeline_name="ci",
        context=TriggerContext(kind=kind, ref=ref),
        concurrency_key=f"ci:{ref}",
        verdict=verdict,
    )
    defaults.update(overrides)
    return PipelineRun(**defaults)


def make_job(job_id: str, ordinal: int, result: JobResult, detail: str = "") -> Job:
    return Job(
        id=job_id,
        run_id="run-1",
        tier_ordinal=ordinal,
        runner_class="shared",
        timeout=60,
        result=result,
        attempts=1,
        detail=detail,
    )


class TestSummary:
    def test_failed_run_names_first_failing_tier(self):
        run = make_run(ref="feature/x", verdict=RunVerdict.FAILED, failed_tier=1)
        run.record_tier(
            TierResult(
                ordinal=1,
                name="lint",
                aggregate=TierAggregate.FAILURE,
                jobs=(
                    make_job("lint", 1, JobResult.FAILURE, "exit code 1"),
                    make_job("format", 1, JobResult.CANCELED),
                ),
            )
        )
        summary = Publisher().build_summary(run, PIPELINE)

        assert summary.failed_tier == 1
        assert summary.failed_tier_name == "lint"
        assert [j.id for j in summary.failing_jobs] == ["lint"]
        assert summary.failing_jobs[0].log_url == "https://ci.example/run-1/1/lint"
        assert not summary.infra_only
        assert [t.status for t in summary.tiers] == ["failure", "not run", "not run"]

        text = render_summary(summary)
        assert "FAILED at tier 1 (lint)" in text
        assert "FAILED lint: failure (exit code 1) logs: https://ci.example/run-1/1/lint" in text

    def test_infra_failure_suggests_rerun(self):
        run = make_run(verdict=RunVerdict.FAILED, failed_tier=2)
        run.record_tier(
            TierResult(
                ordinal=1,
                name="lint",
                aggregate=TierAggregate.SUCCESS,
                jobs=(make_job("lint", 1, JobResult.SUCCESS),),
            )
        )
        run.record_tier(
            TierResult(
                ordinal=2,
                name="test",
                aggregate=TierAggregate.INFRA_ERROR,
                jobs=(make_job("unit", 2, JobResult.INFRA_ERROR, "runner lost"),),
            )
        )
        summary = Publisher().build_summary(run, PIPELINE)
        assert summary.infra_only
        assert "re-run" in render_summary(summary)

    def test_superseded_is_not_a_failure(self):
        run = make_run(verdict=RunVerdict.SUPERSEDED)
        for tier in PIPELINE.tiers:
            run.record_tier(TierResult.skipped(tier.ordinal, tier.name, SkipReason.SUPERSEDED))
        summary = Publisher().build_summary(run, PIPELINE)
        text = render_summary(summary)
        assert summary.failed_tier is None
        assert "SUPERSEDED" in text
        assert "FAILED" not in text
        assert "skipped [superseded]" in text

    def test_skipped_run_says_why(self):
        run = make_run(
            verdict=RunVerdict.SKIPPED, skip_reason="all changed paths match paths_ignore"
        )
        summary = Publisher().build_summary(run, PIPELINE)
        assert summary.skip_reason == "all changed paths match paths_ignore"
        assert "skipped: all changed paths match paths_ignore" in render_summary(summary)


class TestPublish:
    @pytest.mark.asyncio
    async def test_publishes_on_eligible_branch(self):
        store = AsyncMock()
        publisher = Publisher({ArtifactKind.OBJECT_STORE: store})
        run = make_run()

        records = await publisher.publish(run, PIPELINE, ARTIFACTS)

        assert [r.success for r in records] == [True]
        assert records[0].draft is False
        store.put.assert_awaited_once()
        assert store.put.await_args.kwargs == {"draft": False}
        assert run.publications == records

    @pytest.mark.asyncio
    async def test_tag_publishes_as_draft(self):
        store = AsyncMock()
        publisher = Publisher({ArtifactKind.OBJECT_STORE: store})
        run = make_run(kind=EventKind.TAG, ref="v1.2.0")

        records = await publisher.publish(run, PIPELINE, ARTIFACTS)

        assert records[0].draft is True
        assert store.put.await_args.kwargs == {"draft": True}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kind,ref,verdict",
        [
            (EventKind.PUSH, "feature/x", RunVerdict.SUCCEEDED),
            (EventKind.PROPOSED_CHANGE, "42", RunVerdict.SUCCEEDED),
            (EventKind.MANUAL, "main", RunVerdict.SUCCEEDED),
            (EventKind.PUSH, "main", RunVerdict.FAILED),
        ],
    )
    async def test_not_eligible(self, kind, ref, verdict):
        store = AsyncMock()
        publisher = Publisher({ArtifactKind.OBJECT_STORE: store})
        records = await publisher.publish(make_run(kind, ref, verdict), PIPELINE, ARTIFACTS)
        assert records == []
        store.put.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_at_most_once(self):
        store = AsyncMock()
        publisher = Publisher({ArtifactKind.OBJECT_STORE: store})
        run = make_run()
        await publisher.publish(run, PIPELINE, ARTIFACTS)
        assert await publisher.publish(run, PIPELINE, ARTIFACTS) == []
        assert store.put.await_count == 1

    @pytest.mark.asyncio
    async def test_storage_failure_recorded_not_raised(self):
        store = AsyncMock()
        store.put.side_effect = StorageError("bucket gone")
        publisher = Publisher({ArtifactKind.OBJECT_STORE: store})
        run = make_run()

        records = await publisher.publish(run, PIPELINE, ARTIFACTS)

        assert records[0].success is False
        assert records[0].error == "bucket gone"
        assert run.verdict == RunVerdict.SUCCEEDED
        assert "failed (bucket gone)" in render_summary(publisher.build_summary(run, PIPELINE))

    @pytest.mark.asyncio
    async def test_missing_store_recorded(self):
        run = make_run()
        records = await Publisher().publish(run, PIPELINE, ARTIFACTS)
        assert records[0].success is False
        assert "no storage collaborator" in records[0].error
