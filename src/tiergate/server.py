"""tiergate server — FastAPI application that ties all components together.

Startup sequence:
1. Load .tiergate/ config
2. Initialize SQLite database, fail runs abandoned by a previous process
3. Build runner pool, dispatcher, concurrency controller, publisher, coordinator
4. Wire HTTP endpoints
5. Start the event consumer loop

Shutdown:
1. Stop the consumer loop, cancelling in-flight runs
2. Close storage and GitHub clients
3. Close database
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

import aiosqlite

from tiergate.config import ArtifactKind, TierGateConfig, load_config
from tiergate.executors import CommandExecutor
from tiergate.github_client import GitHubClient
from tiergate.models import ChangeEvent, InvalidTrigger
from tiergate.pipeline import (
    ConcurrencyController,
    JobDispatcher,
    Publisher,
    RunCoordinator,
    RunnerPool,
    RunRegistry,
)
from tiergate.pipeline.models import PipelineRun
from tiergate.storage import FilesystemArtifactStore, HttpArtifactStore
from tiergate.webhook import configure as configure_webhook
from tiergate.webhook import router as webhook_router

logger = logging.getLogger(__name__)


class TierGateServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, repo_root: Path | None = None):
        self.repo_root = repo_root or Path.cwd()
        # TIERGATE_CONFIG_DIR overrides the in-repo .tiergate/ directory
        config_dir = os.environ.get("TIERGATE_CONFIG_DIR", "").strip()
        self.config_dir = Path(config_dir) if config_dir else self.repo_root / ".tiergate"

        # Components (initialized in start())
        self.config: TierGateConfig | None = None
        self.db: aiosqlite.Connection | None = None
        self.registry: RunRegistry | None = None
        self.dispatcher: JobDispatcher | None = None
        self.controller: ConcurrencyController | None = None
        self.coordinator: RunCoordinator | None = None
        self.event_queue: asyncio.Queue[ChangeEvent] | None = None
        self.http_store: HttpArtifactStore | None = None
        self.github: GitHubClient | None = None
        self._consumer: asyncio.Task | None = None
        self._runs: set[asyncio.Task] = set()
        self._running = False

    async def start(self) -> None:
        logger.info("Starting tiergate server (config=%s)", self.config_dir)

        # 1. Config
        self.config = load_config(self.config_dir)
        data_dir = (
            Path(self.config.runtime.data_dir)
            if self.config.runtime.data_dir
            else self.repo_root / ".tiergate-data"
        )
        data_dir.mkdir(parents=True, exist_ok=True)

        # 2. Database
        self.db = await aiosqlite.connect(str(data_dir / "runs.db"))
        self.db.row_factory = aiosqlite.Row
        self.registry = RunRegistry(self.db)
        await self.registry.initialize()
        abandoned = await self.registry.abandon_active_runs("abandoned by server restart")
        if abandoned:
            logger.warning("Marked %d run(s) from a previous process as failed", abandoned)

        # 3. Pipeline components
        pool = RunnerPool(self.config.runners)
        executor = CommandExecutor(self.repo_root, log_dir=data_dir / "logs")
        self.dispatcher = JobDispatcher(executor, pool)
        self.controller = ConcurrencyController()
        self.http_store = HttpArtifactStore(token=os.environ.get("TIERGATE_STORAGE_TOKEN"))
        await self.http_store.start()
        publisher = Publisher(
            {
                ArtifactKind.OBJECT_STORE: FilesystemArtifactStore(data_dir / "artifacts"),
                ArtifactKind.RELEASE_CHANNEL: self.http_store,
            }
        )
        self.coordinator = RunCoordinator(
            self.config, self.dispatcher, self.controller, publisher, registry=self.registry
        )
        self.coordinator.on_run_complete(self._chain_on_success)

        # 4. HTTP endpoints
        self.github = GitHubClient(token=os.environ.get("TIERGATE_GITHUB_TOKEN") or None)
        await self.github.start()
        self.event_queue = asyncio.Queue(maxsize=self.config.runtime.queue_size)
        configure_webhook(
            self.event_queue,
            self.config,
            registry=self.registry,
            controller=self.controller,
            github=self.github,
            webhook_secret=os.environ.get("TIERGATE_WEBHOOK_SECRET") or None,
            rate_limit_max=self.config.runtime.webhook_rate_limit,
        )

        # 5. Consumer loop
        self._running = True
        self._consumer = asyncio.create_task(self._consumer_loop(), name="tiergate-consumer")

        logger.info(
            "tiergate server started (%d pipeline(s): %s)",
            len(self.config.pipelines),
            ", ".join(self.config.pipelines),
        )

    async def stop(self) -> None:
        """Graceful shutdown — stop consuming, cancel in-flight runs, close resources."""
        logger.info("tiergate server shutting down")
        self._running = False

        if self._consumer:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass

        if self.controller:
            for run in self.controller.active_runs():
                await self.controller.cancel(run.run_id, "server shutdown")
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        if self.dispatcher:
            await self.dispatcher.drain()

        if self.http_store:
            await self.http_store.close()
        if self.github:
            await self.github.close()
        if self.db:
            await self.db.close()

        logger.info("tiergate server stopped")

    async def _consumer_loop(self) -> None:
        """Main consumer loop — dequeue events and start their runs."""
        if self.event_queue is None:
            raise RuntimeError("Server not started: no event queue")
        while self._running:
            try:
                event = await asyncio.wait_for(self.event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            # Runs proceed independently; the controller serializes same-key runs
            task = asyncio.create_task(self._handle(event))
            self._runs.add(task)
            task.add_done_callback(self._runs.discard)

    async def _handle(self, event: ChangeEvent) -> None:
        if self.coordinator is None:
            logger.error("Dropped %s event for %s: server not started", event.kind.value, event.ref)
            return
        try:
            await self.coordinator.handle_event(event)
        except InvalidTrigger as exc:
            logger.warning("Dropped %s event for %s: %s", event.kind.value, event.ref, exc)
        except Exception:
            logger.exception("Error handling %s event for %s", event.kind.value, event.ref)

    async def _chain_on_success(self, run: PipelineRun) -> None:
        if self.coordinator is None or self.event_queue is None:
            return
        chained = self.coordinator.chained_event(run)
        if chained is None:
            return
        logger.info("Run %s succeeded, enqueueing chained terminal-tier run", run.run_id)
        await self.event_queue.put(chained)


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = TierGateServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(repo_root: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = TierGateServer(repo_root)

    app = FastAPI(
        title="tiergate",
        version="0.1.0",
        description="Cost-aware multi-tier CI pipeline orchestrator",
        lifespan=lifespan,
    )

    app.include_router(webhook_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with queue and run metrics."""
        active = _server.controller.active_runs() if _server.controller else []
        return {
            "status": "ok",
            "project": _server.config.project.name if _server.config else None,
            "queue_depth": _server.event_queue.qsize() if _server.event_queue else 0,
            "active_runs": [
                {"run_id": r.run_id, "pipeline": r.pipeline_name, "key": r.concurrency_key}
                for r in active
            ],
        }

    return app
