"""End-to-end tests for the run coordinator with a scripted executor."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import Script, ScriptedExecutor, make_config, make_pipeline, make_tier
from tiergate.config import ArtifactKind
from tiergate.models import ChangeEvent, EventKind, InvalidTrigger
from tiergate.pipeline import coordinator as coordinator_module
from tiergate.pipeline.concurrency import ConcurrencyController
from tiergate.pipeline.coordinator import RunCoordinator
from tiergate.pipeline.dispatcher import JobDispatcher
from tiergate.pipeline.models import ExecutionResult, JobResult, RunVerdict, SkipReason
from tiergate.pipeline.publisher import Publisher, StorageError
from tiergate.pipeline.registry import RunRegistry
from tiergate.pipeline.runners import RunnerPool


def make_coordinator(executor, config=None, *, registry=None):
    config = config or make_config()
    store = AsyncMock()
    coordinator = RunCoordinator(
        config,
        JobDispatcher(executor, RunnerPool(config.runners)),
        ConcurrencyController(),
        Publisher({ArtifactKind.OBJECT_STORE: store}),
        registry=registry,
    )
    return coordinator, store


def push(ref: str, *paths: str) -> ChangeEvent:
    return ChangeEvent(kind=EventKind.PUSH, ref=ref, changed_paths=list(paths))


class TestScenarios:
    @pytest.mark.asyncio
    async def test_cheap_failure_stops_the_pipeline(self):
        executor = ScriptedExecutor({"lint": Script(result=ExecutionResult.FAILURE)})
        coordinator, store = make_coordinator(executor)

        run = await coordinator.execute("ci", push("feature/x", "src/app.py"))

        assert run.verdict == RunVerdict.FAILED
        assert run.failed_tier == 1
        assert executor.tiers_called() == {1}
        assert [t.ordinal for t in run.tiers] == [1]
        assert run.summary["failed_tier"] == 1
        assert run.summary["failing_jobs"][0]["id"] == "lint"
        store.put.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tag_runs_every_tier_and_publishes_draft(self):
        executor = ScriptedExecutor({"package": Script(artifacts=["widgets-1.2.0.tar.gz"])})
        coordinator, store = make_coordinator(executor)

        run = await coordinator.execute("ci", ChangeEvent(kind=EventKind.TAG, ref="v1.2.0"))

        assert run.verdict == RunVerdict.SUCCEEDED
        assert executor.tiers_called() == {1, 2, 3}
        assert run.concurrency_key == "ci:tag-v1.2.0"
        assert [(p.artifact, p.draft, p.success) for p in run.publications] == [
            ("widgets-1.2.0.tar.gz", True, True)
        ]
        store.put.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_docs_only_change_is_skipped(self):
        executor = ScriptedExecutor()
        coordinator, store = make_coordinator(executor)

        run = await coordinator.execute("ci", push("main", "docs/intro.md", "docs/faq.md"))

        assert run.verdict == RunVerdict.SKIPPED
        assert executor.calls == []
        assert run.jobs == []
        assert run.cost_units == 0
        assert all(t.reason == SkipReason.INELIGIBLE for t in run.tiers)
        store.put.assert_not_awaited()


class TestCost:
    @pytest.mark.asyncio
    async def test_cost_counts_runner_class_per_attempt(self):
        # shared=1 x2, small=4 x2, large=16
        coordinator, _ = make_coordinator(ScriptedExecutor())
        run = await coordinator.execute("ci", push("feature/x", "src/app.py"))
        assert run.verdict == RunVerdict.SUCCEEDED
        assert run.cost_units == 26

    @pytest.mark.asyncio
    async def test_retries_are_paid_for(self):
        config = make_config(
            {"ci": make_pipeline([make_tier(1, "test", ["unit"], runner_class="small",
                                            infra_retries=1)])}
        )
        executor = ScriptedExecutor(
            {"unit": Script(attempts=[ExecutionResult.INFRA_ERROR, ExecutionResult.SUCCESS])}
        )
        coordinator, _ = make_coordinator(executor, config)
        run = await coordinator.execute("ci", push("feature/x"))
        assert run.verdict == RunVerdict.SUCCEEDED
        assert run.cost_units == 8


class TestPublication:
    @pytest.mark.asyncio
    async def test_main_publishes_terminal_artifacts(self):
        executor = ScriptedExecutor({"package": Script(artifacts=["widgets.tar.gz"])})
        coordinator, store = make_coordinator(executor)

        run = await coordinator.execute("ci", push("main", "src/app.py"))

        assert run.verdict == RunVerdict.SUCCEEDED
        assert run.publications[0].draft is False
        assert store.put.await_args.kwargs == {"draft": False}

    @pytest.mark.asyncio
    async def test_storage_failure_keeps_success(self):
        executor = ScriptedExecutor({"package": Script(artifacts=["widgets.tar.gz"])})
        coordinator, store = make_coordinator(executor)
        store.put.side_effect = StorageError("quota exceeded")

        run = await coordinator.execute("ci", push("main"))

        assert run.verdict == RunVerdict.SUCCEEDED
        assert run.publications[0].success is False
        assert run.summary["publications"][0]["error"] == "quota exceeded"


class TestSupersede:
    @pytest.mark.asyncio
    async def test_newer_push_supersedes_running_run(self):
        executor = ScriptedExecutor(
            {"unit": Script(delay=5), "package": Script(artifacts=["widgets.tar.gz"])}
        )
        coordinator, store = make_coordinator(executor)

        first = asyncio.create_task(coordinator.execute("ci", push("main")))
        while not executor.called("unit"):
            await asyncio.sleep(0.01)
        executor.scripts["unit"] = Script()

        second = await asyncio.wait_for(coordinator.execute("ci", push("main")), timeout=5)
        older = await first

        assert older.verdict == RunVerdict.SUPERSEDED
        assert older.failed_tier is None
        assert older.tier_result(2).reason == SkipReason.SUPERSEDED
        assert older.tier_result(3).reason == SkipReason.SUPERSEDED
        assert older.publications == []
        assert "unit" in executor.cancelled
        assert older.summary["verdict"] == "superseded"

        assert second.verdict == RunVerdict.SUCCEEDED
        assert store.put.await_count == 1

    @pytest.mark.asyncio
    async def test_docs_only_push_leaves_running_run_alone(self):
        executor = ScriptedExecutor({"unit": Script(delay=0.2)})
        coordinator, _ = make_coordinator(executor)

        first = asyncio.create_task(coordinator.execute("ci", push("main", "src/a.c")))
        while not executor.called("unit"):
            await asyncio.sleep(0.01)

        docs = await asyncio.wait_for(
            coordinator.execute("ci", push("main", "docs/readme.md")), timeout=1
        )
        assert docs.verdict == RunVerdict.SKIPPED
        assert docs.jobs == []
        assert docs.summary["skip_reason"] == "all changed paths match paths_ignore"
        assert coordinator._controller.active_run("ci:main") is not None

        older = await first
        assert older.verdict == RunVerdict.SUCCEEDED
        assert executor.cancelled == []
        assert executor.tiers_called() == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_different_refs_run_side_by_side(self):
        executor = ScriptedExecutor({"unit": Script(delay=0.05)})
        coordinator, _ = make_coordinator(executor)
        runs = await asyncio.gather(
            coordinator.execute("ci", push("main")),
            coordinator.execute("ci", push("feature/x")),
        )
        assert [r.verdict for r in runs] == [RunVerdict.SUCCEEDED, RunVerdict.SUCCEEDED]


def chained_config():
    return make_config(
        {
            "ci": make_pipeline(
                [
                    make_tier(1, "lint", ["lint"]),
                    make_tier(2, "test", ["unit"], runner_class="small"),
                    make_tier(
                        3,
                        "build",
                        [{"id": "package", "artifacts": ["dist/*"]}],
                        runner_class="large",
                        eligibility={"events": ["push", "tag"], "on_upstream_success": True},
                    ),
                ],
                chain_on_success=True,
            )
        }
    )


class TestChaining:
    @pytest.mark.asyncio
    async def test_proposed_change_chains_into_terminal_tier(self):
        executor = ScriptedExecutor({"package": Script(artifacts=["widgets.tar.gz"])})
        coordinator, store = make_coordinator(executor, chained_config())

        upstream = await coordinator.execute(
            "ci", ChangeEvent(kind=EventKind.PROPOSED_CHANGE, ref="42")
        )
        assert upstream.verdict == RunVerdict.SUCCEEDED
        assert executor.tiers_called() == {1, 2}

        event = coordinator.chained_event(upstream)
        assert event is not None
        assert event.upstream_run_id == upstream.run_id

        executor.calls.clear()
        [chained] = await coordinator.handle_event(event)

        assert chained.verdict == RunVerdict.SUCCEEDED
        assert executor.tiers_called() == {3}
        assert chained.context.upstream_run_id == upstream.run_id
        # Chained runs never publish and never chain again
        store.put.assert_not_awaited()
        assert coordinator.chained_event(chained) is None

    @pytest.mark.asyncio
    async def test_no_chain_without_flag_or_success(self):
        coordinator, _ = make_coordinator(
            ScriptedExecutor({"lint": Script(result=ExecutionResult.FAILURE)}),
            chained_config(),
        )
        failed = await coordinator.execute(
            "ci", ChangeEvent(kind=EventKind.PROPOSED_CHANGE, ref="42")
        )
        assert coordinator.chained_event(failed) is None

        plain, _ = make_coordinator(ScriptedExecutor())
        run = await plain.execute("ci", ChangeEvent(kind=EventKind.PROPOSED_CHANGE, ref="42"))
        assert plain.chained_event(run) is None

    @pytest.mark.asyncio
    async def test_unknown_upstream_rejected(self):
        executor = ScriptedExecutor()
        coordinator, _ = make_coordinator(executor, chained_config())
        event = ChangeEvent(kind=EventKind.PROPOSED_CHANGE, ref="42", upstream_run_id="run-nope")
        with pytest.raises(InvalidTrigger, match="not found"):
            await coordinator.handle_event(event)
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_failed_upstream_rejected(self):
        executor = ScriptedExecutor({"lint": Script(result=ExecutionResult.FAILURE)})
        coordinator, _ = make_coordinator(executor, chained_config())
        failed = await coordinator.execute(
            "ci", ChangeEvent(kind=EventKind.PROPOSED_CHANGE, ref="42")
        )
        event = ChangeEvent(
            kind=EventKind.PROPOSED_CHANGE, ref="42", upstream_run_id=failed.run_id
        )
        with pytest.raises(InvalidTrigger, match="did not succeed"):
            await coordinator.execute("ci", event)


class TestEntryPoints:
    @pytest.mark.asyncio
    async def test_manual_bypasses_path_filters(self):
        executor = ScriptedExecutor()
        coordinator, store = make_coordinator(executor)

        run = await coordinator.invoke_manual("ci", "main", changed_paths=["docs/intro.md"])

        assert run.verdict == RunVerdict.SUCCEEDED
        assert executor.tiers_called() == {1, 2, 3}
        store.put.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_manual_paths_select_jobs(self):
        config = make_config(
            {
                "ci": make_pipeline(
                    [
                        make_tier(
                            1,
                            "build",
                            [{"id": "fw", "paths": ["src/**"]}, {"id": "web", "paths": ["web/**"]}],
                        )
                    ]
                )
            }
        )
        executor = ScriptedExecutor()
        coordinator, _ = make_coordinator(executor, config)

        run = await coordinator.invoke_manual("ci", "main", changed_paths=["web/index.html"])

        assert run.verdict == RunVerdict.SUCCEEDED
        assert {j.id: j.result for j in run.jobs} == {
            "fw": JobResult.SKIPPED,
            "web": JobResult.SUCCESS,
        }
        assert not executor.called("fw")

    @pytest.mark.asyncio
    async def test_manual_unknown_pipeline(self):
        coordinator, _ = make_coordinator(ScriptedExecutor())
        with pytest.raises(InvalidTrigger):
            await coordinator.invoke_manual("nightly", "main")

    @pytest.mark.asyncio
    async def test_event_runs_every_pipeline(self):
        config = make_config(
            {
                "ci": make_pipeline(),
                "docs": make_pipeline([make_tier(1, "site", ["build-site"])], paths_ignore=[]),
            }
        )
        executor = ScriptedExecutor()
        coordinator, _ = make_coordinator(executor, config)

        runs = await coordinator.handle_event(push("feature/x", "docs/intro.md"))

        verdicts = {r.pipeline_name: r.verdict for r in runs}
        assert verdicts == {"ci": RunVerdict.SKIPPED, "docs": RunVerdict.SUCCEEDED}
        assert executor.called("build-site")

    @pytest.mark.asyncio
    async def test_internal_error_fails_run(self):
        coordinator, _ = make_coordinator(ScriptedExecutor())
        coordinator._dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("boom"))

        run = await coordinator.execute("ci", push("main"))

        assert run.verdict == RunVerdict.FAILED
        assert run.failed_tier == 1
        assert coordinator._controller.active_run(run.concurrency_key) is None

    @pytest.mark.asyncio
    async def test_completion_callbacks(self):
        coordinator, _ = make_coordinator(ScriptedExecutor())
        seen: list[str] = []

        async def record(run):
            seen.append(run.run_id)

        async def broken(run):
            raise RuntimeError("callback failure")

        coordinator.on_run_complete(broken)
        coordinator.on_run_complete(record)
        run = await coordinator.execute("ci", push("feature/x"))
        assert seen == [run.run_id]


class TestPersistence:
    @pytest.mark.asyncio
    async def test_run_persisted_with_tiers_and_jobs(self, db):
        registry = RunRegistry(db)
        await registry.initialize()
        executor = ScriptedExecutor({"unit": Script(result=ExecutionResult.FAILURE)})
        coordinator, _ = make_coordinator(executor, registry=registry)

        run = await coordinator.execute("ci", push("feature/x", "src/app.py"))

        stored = await registry.get_run(run.run_id)
        assert stored is not None
        assert stored.verdict == RunVerdict.FAILED
        assert stored.failed_tier == 2
        assert stored.current_tier is None
        assert [t.ordinal for t in stored.tiers] == [1, 2]
        assert stored.summary["failed_tier_name"] == "test"
        jobs = {j.id: j.result for j in await registry.get_jobs(run.run_id)}
        assert jobs["unit"] == JobResult.FAILURE
        assert jobs["lint"] == JobResult.SUCCESS

    @pytest.mark.asyncio
    async def test_chained_upstream_found_in_registry(self, db):
        registry = RunRegistry(db)
        await registry.initialize()
        first, _ = make_coordinator(ScriptedExecutor(), chained_config(), registry=registry)
        upstream = await first.execute(
            "ci", ChangeEvent(kind=EventKind.PROPOSED_CHANGE, ref="7")
        )

        # A fresh coordinator (e.g. after a config reload) only has the registry
        second, _ = make_coordinator(ScriptedExecutor(), chained_config(), registry=registry)
        [chained] = await second.handle_event(first.chained_event(upstream))
        assert chained.verdict == RunVerdict.SUCCEEDED

    @pytest.mark.asyncio
    async def test_one_live_run_per_key_in_registry(self, db):
        registry = RunRegistry(db)
        await registry.initialize()
        live_at_create: list[int] = []
        create_run = registry.create_run

        async def create_run_checked(run):
            stored = await registry.list_runs(concurrency_key=run.concurrency_key)
            live_at_create.append(sum(1 for r in stored if not r.is_terminal))
            await create_run(run)

        registry.create_run = create_run_checked
        executor = ScriptedExecutor({"unit": Script(delay=5)})
        coordinator, _ = make_coordinator(executor, registry=registry)

        first = asyncio.create_task(coordinator.execute("ci", push("main")))
        while not executor.called("unit"):
            await asyncio.sleep(0.01)
        executor.scripts["unit"] = Script()

        second = await asyncio.wait_for(coordinator.execute("ci", push("main")), timeout=5)
        older = await first

        assert live_at_create == [0, 0]
        assert (await registry.get_run(older.run_id)).verdict == RunVerdict.SUPERSEDED
        assert (await registry.get_run(second.run_id)).verdict == RunVerdict.SUCCEEDED

    @pytest.mark.asyncio
    async def test_skipped_run_persisted_with_reason(self, db):
        registry = RunRegistry(db)
        await registry.initialize()
        coordinator, _ = make_coordinator(ScriptedExecutor(), registry=registry)

        run = await coordinator.execute("ci", push("main", "docs/intro.md"))

        stored = await registry.get_run(run.run_id)
        assert stored.verdict == RunVerdict.SKIPPED
        assert stored.skip_reason == "all changed paths match paths_ignore"
        assert [t.reason for t in stored.tiers] == [SkipReason.INELIGIBLE] * 3


class TestFinishedRuns:
    @pytest.mark.asyncio
    async def test_only_chainable_runs_are_kept(self):
        coordinator, _ = make_coordinator(ScriptedExecutor(), chained_config())

        await coordinator.execute("ci", push("feature/x"))
        upstream = await coordinator.execute(
            "ci", ChangeEvent(kind=EventKind.PROPOSED_CHANGE, ref="42")
        )

        assert list(coordinator._finished) == [upstream.run_id]

    @pytest.mark.asyncio
    async def test_kept_runs_are_bounded(self, monkeypatch):
        monkeypatch.setattr(coordinator_module, "_FINISHED_CAPACITY", 3)
        coordinator, _ = make_coordinator(ScriptedExecutor(), chained_config())

        runs = [
            await coordinator.execute(
                "ci", ChangeEvent(kind=EventKind.PROPOSED_CHANGE, ref=str(n))
            )
            for n in range(5)
        ]

        assert list(coordinator._finished) == [r.run_id for r in runs[-3:]]
        # Without a registry an evicted upstream can no longer be continued
        with pytest.raises(InvalidTrigger, match="not found"):
            await coordinator.handle_event(coordinator.chained_event(runs[0]))
