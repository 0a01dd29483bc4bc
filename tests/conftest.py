"""Shared fixtures and factories for tiergate tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import aiosqlite
import pytest
import pytest_asyncio

from tiergate.config import TierGateConfig, parse_config
from tiergate.pipeline.dispatcher import CancellationToken
from tiergate.pipeline.models import BuildArtifact, ExecutionResult, JobOutcome


# ── Scripted Executor ────────────────────────────────────────────────────────


@dataclass
class Script:
    """What the fake executor does for one job id."""

    result: ExecutionResult = ExecutionResult.SUCCESS
    delay: float = 0.0
    artifacts: list[str] = field(default_factory=list)
    ignore_cancel: bool = False
    raises: Exception | None = None
    # Results for successive attempts (overrides ``result``)
    attempts: list[ExecutionResult] = field(default_factory=list)


class ScriptedExecutor:
    """JobExecutor that follows a per-job script instead of running anything."""

    def __init__(self, scripts: dict[str, Script] | None = None):
        self.scripts = scripts or {}
        self.calls: list[tuple[str, int]] = []  # (job id, tier ordinal)
        self.cancelled: list[str] = []
        self.finished: list[str] = []
        self.running = 0
        self.max_running = 0
        self._attempts: dict[str, int] = {}

    async def __call__(self, job, spec, runner, token: CancellationToken, *, context):
        script = self.scripts.get(job.id, Script())
        self.calls.append((job.id, job.tier_ordinal))
        attempt = self._attempts.get(job.id, 0)
        self._attempts[job.id] = attempt + 1

        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if script.delay:
                if script.ignore_cancel:
                    await asyncio.sleep(script.delay)
                else:
                    waiter = asyncio.ensure_future(token.wait())
                    try:
                        await asyncio.wait({waiter}, timeout=script.delay)
                    finally:
                        waiter.cancel()
                    if token.cancelled:
                        self.cancelled.append(job.id)
                        await asyncio.sleep(0.01)  # teardown
                        return JobOutcome(result=ExecutionResult.FAILURE, detail="canceled")
            if script.raises is not None:
                raise script.raises
        finally:
            self.running -= 1

        self.finished.append(job.id)
        result = script.result
        if script.attempts:
            result = script.attempts[min(attempt, len(script.attempts) - 1)]
        return JobOutcome(
            result=result,
            detail=f"{job.id} {result.value}",
            artifacts=[
                BuildArtifact(name=name, uri=f"/tmp/{name}", job_id=job.id)
                for name in script.artifacts
            ],
        )

    def called(self, job_id: str) -> bool:
        return any(jid == job_id for jid, _ in self.calls)

    def tiers_called(self) -> set[int]:
        return {ordinal for _, ordinal in self.calls}


# ── Config Factories ─────────────────────────────────────────────────────────


def make_tier(ordinal: int, name: str, jobs: list[str] | list[dict], **overrides) -> dict:
    job_dicts = [{"id": j} if isinstance(j, str) else j for j in jobs]
    tier: dict[str, Any] = {"ordinal": ordinal, "name": name, "jobs": job_dicts}
    tier.update(overrides)
    return tier


def make_pipeline(tiers: list[dict] | None = None, **overrides) -> dict:
    pipeline: dict[str, Any] = {
        "tiers": tiers
        or [
            make_tier(1, "lint", ["lint", "format"], fail_fast="stop_on_first"),
            make_tier(2, "test", ["unit", "integration"], runner_class="small"),
            make_tier(3, "build", [{"id": "package", "artifacts": ["dist/*"]}],
                      runner_class="large"),
        ],
        "paths_ignore": ["docs/**"],
        "publication": {
            "branches": ["main"],
            "tags": ["v*"],
            "targets": [{"kind": "object_store", "destination": "dist"}],
        },
    }
    pipeline.update(overrides)
    return pipeline


def make_config(pipelines: dict[str, dict] | None = None, **overrides) -> TierGateConfig:
    raw: dict[str, Any] = {
        "project": {"name": "widgets"},
        "pipelines": pipelines or {"ci": make_pipeline()},
    }
    raw.update(overrides)
    return parse_config(raw)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest_asyncio.fixture
async def db(tmp_path):
    async with aiosqlite.connect(str(tmp_path / "test.db")) as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys=ON")
        yield conn
