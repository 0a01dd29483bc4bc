"""Run registry — SQLite persistence for pipeline runs, tiers, jobs and publications.

Key exports:
    RunRegistry — CRUD for pipeline_runs, tier_results, jobs, publications.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import aiosqlite

from tiergate.config import ArtifactKind, ArtifactTarget
from tiergate.models import EventKind, TriggerContext
from tiergate.pipeline.models import (
    BuildArtifact,
    Job,
    JobResult,
    PipelineRun,
    PublicationRecord,
    RunVerdict,
    SkipReason,
    TierAggregate,
    TierResult,
)

logger = logging.getLogger("tiergate.pipeline.registry")


class RunRegistry:
    """SQLite-backed persistence for pipeline runs.

    Takes an already-open aiosqlite connection with ``row_factory`` set to
    ``aiosqlite.Row``. Call `initialize()` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run registry tables initialized")

    # ── Pipeline Runs ────────────────────────────────────────────────────────

    async def create_run(self, run: PipelineRun) -> None:
        """Insert a new pipeline run."""
        ctx = run.context
        await self._db.execute(
            """
            INSERT INTO pipeline_runs (
                run_id, pipeline_name, kind, ref, changed_paths, is_draft,
                upstream_run_id, concurrency_key, delivery_id,
                verdict, current_tier, failed_tier, cost_units, skip_reason, summary,
                created_at, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.pipeline_name,
                ctx.kind.value,
                ctx.ref,
                json.dumps(sorted(ctx.changed_paths)),
                int(ctx.is_draft),
                ctx.upstream_run_id,
                run.concurrency_key,
                run.delivery_id,
                run.verdict.value,
                run.current_tier,
                run.failed_tier,
                run.cost_units,
                run.skip_reason,
                json.dumps(run.summary),
                _dt_to_str(run.created_at),
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
            ),
        )
        await self._db.commit()

    async def update_run(self, run: PipelineRun) -> None:
        """Update a run's mutable fields."""
        await self._db.execute(
            """
            UPDATE pipeline_runs SET
                verdict = ?, current_tier = ?, failed_tier = ?, cost_units = ?,
                skip_reason = ?, summary = ?, started_at = ?, completed_at = ?
            WHERE run_id = ?
            """,
            (
                run.verdict.value,
                run.current_tier,
                run.failed_tier,
                run.cost_units,
                run.skip_reason,
                json.dumps(run.summary, default=str),
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.run_id,
            ),
        )
        await self._db.commit()

    async def get_run(self, run_id: str) -> PipelineRun | None:
        """Fetch a run with its tier results, jobs and publications."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        run = _row_to_run(row)
        run.tiers = await self._get_tier_results(run_id)
        run.publications = await self.get_publications(run_id)
        return run

    async def list_runs(
        self,
        *,
        concurrency_key: str | None = None,
        verdict: RunVerdict | None = None,
        limit: int = 50,
    ) -> list[PipelineRun]:
        """Most recent runs first, without tier detail."""
        clauses: list[str] = []
        params: list[object] = []
        if concurrency_key:
            clauses.append("concurrency_key = ?")
            params.append(concurrency_key)
        if verdict:
            clauses.append("verdict = ?")
            params.append(verdict.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._db.execute(
            f"SELECT * FROM pipeline_runs {where} ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def get_active_runs(self) -> list[PipelineRun]:
        """Runs that are pending or running."""
        cursor = await self._db.execute(
            "SELECT * FROM pipeline_runs WHERE verdict IN (?, ?) ORDER BY created_at",
            (RunVerdict.PENDING.value, RunVerdict.RUNNING.value),
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def abandon_active_runs(self, reason: str) -> int:
        """Fail runs left non-terminal by a previous process. Returns the count."""
        now = _dt_to_str(datetime.now(timezone.utc))
        cursor = await self._db.execute(
            """
            UPDATE pipeline_runs SET verdict = ?, completed_at = ?, summary = ?
            WHERE verdict IN (?, ?)
            """,
            (
                RunVerdict.FAILED.value,
                now,
                json.dumps({"error": reason}),
                RunVerdict.PENDING.value,
                RunVerdict.RUNNING.value,
            ),
        )
        await self._db.commit()
        return cursor.rowcount

    # ── Tier Results ─────────────────────────────────────────────────────────

    async def record_tier_result(self, run_id: str, result: TierResult) -> None:
        """Insert a tier result and its jobs. A second insert for a tier fails."""
        try:
            await self._db.execute(
                """
                INSERT INTO tier_results (run_id, ordinal, name, aggregate, reason, completed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    result.ordinal,
                    result.name,
                    result.aggregate.value,
                    result.reason.value if result.reason else None,
                    _dt_to_str(result.completed_at),
                ),
            )
        except aiosqlite.IntegrityError as exc:
            raise ValueError(
                f"Run {run_id}: tier {result.ordinal} result already recorded"
            ) from exc
        for job in result.jobs:
            await self._upsert_job(job)
        await self._db.commit()

    async def _get_tier_results(self, run_id: str) -> list[TierResult]:
        cursor = await self._db.execute(
            "SELECT * FROM tier_results WHERE run_id = ? ORDER BY ordinal", (run_id,)
        )
        tier_rows = await cursor.fetchall()
        jobs = await self.get_jobs(run_id)
        results: list[TierResult] = []
        for row in tier_rows:
            results.append(
                TierResult(
                    ordinal=row["ordinal"],
                    name=row["name"],
                    aggregate=TierAggregate(row["aggregate"]),
                    reason=SkipReason(row["reason"]) if row["reason"] else None,
                    jobs=tuple(j for j in jobs if j.tier_ordinal == row["ordinal"]),
                    completed_at=_str_to_dt(row["completed_at"]) or datetime.now(timezone.utc),
                )
            )
        return results

    # ── Jobs ─────────────────────────────────────────────────────────────────

    async def upsert_job(self, job: Job) -> None:
        """Record a job transition (live status)."""
        await self._upsert_job(job)
        await self._db.commit()

    async def _upsert_job(self, job: Job) -> None:
        await self._db.execute(
            """
            INSERT INTO jobs (
                run_id, tier_ordinal, job_id, runner_class, timeout, result, attempts,
                detail, log_url, artifacts, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, tier_ordinal, job_id) DO UPDATE SET
                result = excluded.result,
                attempts = excluded.attempts,
                detail = excluded.detail,
                log_url = excluded.log_url,
                artifacts = excluded.artifacts,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at
            """,
            (
                job.run_id,
                job.tier_ordinal,
                job.id,
                job.runner_class,
                job.timeout,
                job.result.value,
                job.attempts,
                job.detail,
                job.log_url,
                json.dumps([a.model_dump() for a in job.artifacts]),
                _dt_to_str(job.started_at),
                _dt_to_str(job.completed_at),
            ),
        )

    async def get_jobs(self, run_id: str) -> list[Job]:
        cursor = await self._db.execute(
            "SELECT * FROM jobs WHERE run_id = ? ORDER BY tier_ordinal, rowid", (run_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]

    # ── Publications ─────────────────────────────────────────────────────────

    async def record_publications(self, records: list[PublicationRecord]) -> None:
        for record in records:
            await self._db.execute(
                """
                INSERT INTO publications (
                    run_id, artifact, target_kind, destination, draft, success, error,
                    published_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.run_id,
                    record.artifact,
                    record.target.kind.value,
                    record.target.destination,
                    int(record.draft),
                    int(record.success),
                    record.error,
                    _dt_to_str(record.published_at),
                ),
            )
        await self._db.commit()

    async def get_publications(self, run_id: str) -> list[PublicationRecord]:
        cursor = await self._db.execute(
            "SELECT * FROM publications WHERE run_id = ? ORDER BY id", (run_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_publication(r) for r in rows]


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    pipeline_name TEXT NOT NULL,

    kind TEXT NOT NULL,
    ref TEXT NOT NULL,
    changed_paths TEXT DEFAULT '[]',
    is_draft INTEGER DEFAULT 0,
    upstream_run_id TEXT,

    concurrency_key TEXT NOT NULL,
    delivery_id TEXT,

    verdict TEXT DEFAULT 'pending',
    current_tier INTEGER,
    failed_tier INTEGER,
    cost_units REAL DEFAULT 0,
    skip_reason TEXT,
    summary TEXT DEFAULT '{}',

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_key
    ON pipeline_runs(concurrency_key, verdict);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_verdict
    ON pipeline_runs(verdict);

CREATE TABLE IF NOT EXISTS tier_results (
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    ordinal INTEGER NOT NULL,
    name TEXT NOT NULL,
    aggregate TEXT NOT NULL,
    reason TEXT,
    completed_at TEXT,

    PRIMARY KEY(run_id, ordinal)
);

CREATE TABLE IF NOT EXISTS jobs (
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    tier_ordinal INTEGER NOT NULL,
    job_id TEXT NOT NULL,

    runner_class TEXT NOT NULL,
    timeout REAL,
    result TEXT DEFAULT 'pending',
    attempts INTEGER DEFAULT 0,
    detail TEXT DEFAULT '',
    log_url TEXT,
    artifacts TEXT DEFAULT '[]',

    started_at TEXT,
    completed_at TEXT,

    PRIMARY KEY(run_id, tier_ordinal, job_id)
);

CREATE TABLE IF NOT EXISTS publications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    artifact TEXT NOT NULL,
    target_kind TEXT NOT NULL,
    destination TEXT NOT NULL,
    draft INTEGER DEFAULT 0,
    success INTEGER DEFAULT 0,
    error TEXT,
    published_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_publications_run
    ON publications(run_id);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_run(row: aiosqlite.Row) -> PipelineRun:
    context = TriggerContext(
        kind=EventKind(row["kind"]),
        ref=row["ref"],
        changed_paths=frozenset(json.loads(row["changed_paths"] or "[]")),
        is_draft=bool(row["is_draft"]),
        upstream_run_id=row["upstream_run_id"],
    )
    return PipelineRun(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        context=context,
        concurrency_key=row["concurrency_key"],
        delivery_id=row["delivery_id"],
        verdict=RunVerdict(row["verdict"]),
        current_tier=row["current_tier"],
        failed_tier=row["failed_tier"],
        cost_units=row["cost_units"] or 0.0,
        skip_reason=row["skip_reason"],
        summary=json.loads(row["summary"] or "{}"),
        created_at=_str_to_dt(row["created_at"]) or datetime.now(timezone.utc),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["job_id"],
        run_id=row["run_id"],
        tier_ordinal=row["tier_ordinal"],
        runner_class=row["runner_class"],
        timeout=row["timeout"] or 0.0,
        result=JobResult(row["result"]),
        attempts=row["attempts"],
        detail=row["detail"] or "",
        log_url=row["log_url"],
        artifacts=[BuildArtifact(**a) for a in json.loads(row["artifacts"] or "[]")],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_publication(row: aiosqlite.Row) -> PublicationRecord:
    return PublicationRecord(
        run_id=row["run_id"],
        artifact=row["artifact"],
        target=ArtifactTarget(kind=ArtifactKind(row["target_kind"]), destination=row["destination"]),
        draft=bool(row["draft"]),
        success=bool(row["success"]),
        error=row["error"],
        published_at=_str_to_dt(row["published_at"]) or datetime.now(timezone.utc),
    )
