"""Default job execution collaborator — runs a job's command in a subprocess.

The command string from ``JobSpec.run`` is handed to the shell in the working
directory. Exit code 0 is success, anything else is failure. A process that
cannot be spawned at all is an infrastructure error, not a code failure.
Cancellation terminates the process.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from tiergate.config import JobSpec
from tiergate.models import TriggerContext
from tiergate.pipeline.dispatcher import CancellationToken
from tiergate.pipeline.models import BuildArtifact, ExecutionResult, Job, JobOutcome
from tiergate.pipeline.runners import RunnerClass

logger = logging.getLogger(__name__)

# Lines of output kept in a failing job's detail
_TAIL_LINES = 20


class CommandExecutor:
    """Runs jobs as local shell commands.

    Args:
        workdir: Directory commands run in and artifact globs resolve against.
        log_dir: If set, each attempt's combined output is written to
            ``<log_dir>/<run_id>/<tier>-<job>.log`` and reported as the log URL.
        kill_grace: Seconds between SIGTERM and SIGKILL on cancellation.
    """

    def __init__(
        self,
        workdir: Path | None = None,
        *,
        log_dir: Path | None = None,
        kill_grace: float = 5.0,
    ):
        self.workdir = workdir or Path.cwd()
        self.log_dir = log_dir
        self.kill_grace = kill_grace

    async def __call__(
        self,
        job: Job,
        spec: JobSpec,
        runner: RunnerClass,
        token: CancellationToken,
        *,
        context: TriggerContext,
    ) -> JobOutcome:
        if not spec.run.strip():
            return JobOutcome(result=ExecutionResult.SUCCESS, detail="no command")

        env = {
            **os.environ,
            "TIERGATE_RUN_ID": job.run_id,
            "TIERGATE_TIER": str(job.tier_ordinal),
            "TIERGATE_JOB": job.id,
            "TIERGATE_RUNNER_CLASS": runner.name,
            "TIERGATE_EVENT": context.kind.value,
            "TIERGATE_REF": context.ref,
            **spec.env,
        }

        try:
            proc = await asyncio.create_subprocess_shell(
                spec.run,
                cwd=str(self.workdir),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            logger.error("Could not spawn job '%s' (run %s): %s", job.id, job.run_id, exc)
            return JobOutcome(result=ExecutionResult.INFRA_ERROR, detail=f"spawn failed: {exc}")

        logger.debug("Job '%s' (run %s) started pid %d", job.id, job.run_id, proc.pid)
        communicate = asyncio.ensure_future(proc.communicate())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
            if communicate not in done:
                await self._terminate(proc)
                communicate.cancel()
                return JobOutcome(
                    result=ExecutionResult.FAILURE,
                    detail=f"terminated: {token.reason or 'canceled'}",
                )
            stdout, _ = communicate.result()
        finally:
            cancelled.cancel()
            if not communicate.done():
                # Outer timeout or task cancellation while the process runs
                communicate.cancel()
                await self._terminate(proc)

        output = (stdout or b"").decode(errors="replace")
        log_url = self._write_log(job, output)

        if proc.returncode != 0:
            tail = "\n".join(output.rstrip().splitlines()[-_TAIL_LINES:])
            detail = f"exit code {proc.returncode}"
            if tail:
                detail += f"\n{tail}"
            return JobOutcome(result=ExecutionResult.FAILURE, detail=detail, log_url=log_url)

        return JobOutcome(
            result=ExecutionResult.SUCCESS,
            log_url=log_url,
            artifacts=self._collect_artifacts(job, spec),
        )

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning("Process %d ignored SIGTERM, killing", proc.pid)
            proc.kill()
            await proc.wait()

    def _write_log(self, job: Job, output: str) -> str | None:
        if self.log_dir is None:
            return None
        path = self.log_dir / job.run_id / f"{job.tier_ordinal}-{job.id}.log"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(output)
        except OSError as exc:
            logger.warning("Could not write log for job '%s': %s", job.id, exc)
            return None
        return path.resolve().as_uri()

    def _collect_artifacts(self, job: Job, spec: JobSpec) -> list[BuildArtifact]:
        artifacts: list[BuildArtifact] = []
        for pattern in spec.artifacts:
            matches = sorted(p for p in self.workdir.glob(pattern) if p.is_file())
            if not matches:
                logger.warning("Job '%s': artifact pattern '%s' matched nothing", job.id, pattern)
            for path in matches:
                artifacts.append(
                    BuildArtifact(name=path.name, uri=str(path.resolve()), job_id=job.id)
                )
        return artifacts
