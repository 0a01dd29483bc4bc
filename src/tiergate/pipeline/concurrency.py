"""Concurrency controller — one active run per concurrency key.

A newer run on the same key supersedes the older one: the old run's token is
cancelled and the newer run does not proceed until the old one has released
its slot (or a grace period expires). All slot changes happen under one
asyncio lock, so a run that is just concluding cannot slip another tier in
after it has been cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from tiergate.pipeline.dispatcher import CancellationToken
from tiergate.pipeline.models import PipelineRun, RunVerdict

logger = logging.getLogger("tiergate.pipeline.concurrency")


@dataclass
class _Slot:
    run: PipelineRun
    token: CancellationToken
    released: asyncio.Event = field(default_factory=asyncio.Event)


class ConcurrencyController:
    """Tracks the active PipelineRun per concurrency key."""

    def __init__(self, *, supersede_grace: float = 30.0):
        self._supersede_grace = supersede_grace
        self._lock = asyncio.Lock()
        self._active: dict[str, _Slot] = {}
        self._by_run: dict[str, _Slot] = {}

    async def register(
        self,
        run: PipelineRun,
        token: CancellationToken,
        *,
        grace: float | None = None,
    ) -> PipelineRun | None:
        """Make ``run`` the active run for its key.

        Cancels the previous active run, if any, and waits for it to release.
        Returns the superseded run.
        """
        async with self._lock:
            previous = self._active.get(run.concurrency_key)
            slot = _Slot(run=run, token=token)
            self._active[run.concurrency_key] = slot
            self._by_run[run.run_id] = slot
            if previous is not None:
                previous.token.cancel(f"superseded by run {run.run_id}")
                logger.info(
                    "Run %s supersedes run %s on key '%s'",
                    run.run_id,
                    previous.run.run_id,
                    run.concurrency_key,
                )

        if previous is None:
            return None

        timeout = self._supersede_grace if grace is None else grace
        try:
            await asyncio.wait_for(previous.released.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Run %s did not release key '%s' within %.1fs; marking superseded",
                previous.run.run_id,
                run.concurrency_key,
                timeout,
            )
            async with self._lock:
                self._release(previous, RunVerdict.SUPERSEDED)
        return previous.run

    async def admit_tier(self, run: PipelineRun) -> bool:
        """Whether ``run`` may create its next tier's jobs."""
        async with self._lock:
            slot = self._by_run.get(run.run_id)
            return slot is not None and not slot.token.cancelled

    async def finish(self, run: PipelineRun, verdict: RunVerdict) -> RunVerdict:
        """Record the terminal verdict and free the key.

        A cancelled run always finishes ``superseded``, even if its last tier
        concluded at the same moment.
        """
        async with self._lock:
            slot = self._by_run.get(run.run_id)
            if slot is None:
                # Already force-released after the grace period
                return run.verdict
            if slot.token.cancelled:
                verdict = RunVerdict.SUPERSEDED
            self._release(slot, verdict)
            return verdict

    async def cancel(self, run_or_key: str, reason: str = "canceled by operator") -> bool:
        """Cancel a run by ID or concurrency key. Returns False if it is not active."""
        async with self._lock:
            slot = self._by_run.get(run_or_key) or self._active.get(run_or_key)
            if slot is None:
                return False
            return slot.token.cancel(reason)

    def active_run(self, key: str) -> PipelineRun | None:
        slot = self._active.get(key)
        return slot.run if slot else None

    def active_runs(self) -> list[PipelineRun]:
        return [slot.run for slot in self._active.values()]

    def _release(self, slot: _Slot, verdict: RunVerdict) -> None:
        if not slot.run.is_terminal:
            slot.run.verdict = verdict
            slot.run.completed_at = datetime.now(timezone.utc)
        self._by_run.pop(slot.run.run_id, None)
        if self._active.get(slot.run.concurrency_key) is slot:
            del self._active[slot.run.concurrency_key]
        slot.released.set()
