"""Configuration loading for tiergate.

Reads .tiergate/config.yaml into frozen Pydantic models. The resulting
``TierGateConfig`` is a snapshot: it is loaded once and passed explicitly to
the Run Coordinator, so concurrent runs always see a consistent configuration.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from tiergate.models import EventKind, TierGateError, TriggerContext

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"

NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_.-]*$")


class ConfigError(TierGateError, ValueError):
    """Configuration file is missing required structure or fails validation."""


# ── Enums ────────────────────────────────────────────────────────────────────


class FailFastPolicy(str, Enum):
    """How a tier reacts to the first failing job."""

    STOP_ON_FIRST = "stop_on_first"
    COLLECT_ALL = "collect_all"


class TimeoutPolicy(str, Enum):
    """What a job timeout counts as."""

    FAILURE = "failure"
    INFRA_ERROR = "infra_error"


class ArtifactKind(str, Enum):
    OBJECT_STORE = "object_store"
    RELEASE_CHANNEL = "release_channel"


# ── Runner Classes ───────────────────────────────────────────────────────────


class RunnerClassConfig(BaseModel):
    """A class of execution capacity. Only a capability and cost tag."""

    model_config = {"frozen": True}

    description: str = ""
    cost: float = Field(default=1.0, ge=0)  # relative cost units per job
    labels: list[str] = Field(default_factory=list)
    shared: bool = False
    available: bool = True


DEFAULT_RUNNER_CLASSES: dict[str, dict[str, Any]] = {
    "shared": {"description": "cheap shared runners", "cost": 1.0, "shared": True},
    "small": {"description": "dedicated small runners", "cost": 4.0},
    "large": {"description": "dedicated large runners", "cost": 16.0},
}


# ── Eligibility ──────────────────────────────────────────────────────────────


class EligibilityPredicate(BaseModel):
    """Decides whether a tier takes part in a run. Pure function of the context.

    Branch and tag filters follow the usual CI convention: once either list is
    given, pushes must match ``branches`` and tag events must match ``tags``.
    """

    model_config = {"frozen": True}

    events: list[EventKind] | None = None  # None = every event kind
    branches: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    paths: list[str] = Field(default_factory=list)
    skip_draft: bool = False
    on_upstream_success: bool = False

    def matches(self, ctx: TriggerContext) -> bool:
        if self.skip_draft and ctx.is_draft:
            return False

        # Chained triggers only reach tiers that opt in
        if ctx.is_chained:
            return self.on_upstream_success

        if self.events is not None and ctx.kind not in self.events:
            return False

        # Manual runs bypass ref and path filtering
        if ctx.kind == EventKind.MANUAL:
            return True

        if self.branches or self.tags:
            if ctx.kind in (EventKind.PUSH, EventKind.SCHEDULED):
                if not match_any(ctx.ref, self.branches):
                    return False
            elif ctx.kind == EventKind.TAG:
                if not match_any(ctx.ref, self.tags):
                    return False

        if self.paths and ctx.changed_paths:
            if not any(match_any(p, self.paths) for p in ctx.changed_paths):
                return False

        return True


# ── Tier & Job Definitions ───────────────────────────────────────────────────


class JobSpec(BaseModel):
    """One opaque check or build step inside a tier."""

    model_config = {"frozen": True}

    id: str
    run: str = ""  # Passed verbatim to the job executor
    runner_class: str | None = None  # None → tier's runner class
    timeout: str | float | None = None  # None → tier's timeout
    paths: list[str] = Field(default_factory=list)  # Path-based job selection
    artifacts: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, v: str) -> str:
        if not NAME_PATTERN.match(v):
            raise ValueError(f"Job ID '{v}' must match pattern {NAME_PATTERN.pattern}")
        return v

    def selected(self, ctx: TriggerContext) -> bool:
        """Whether the changed paths select this job.

        Applies to manual runs too: a manual run with no paths selects every job.
        """
        if not self.paths or not ctx.changed_paths:
            return True
        return any(match_any(p, self.paths) for p in ctx.changed_paths)


class TierDefinition(BaseModel):
    """A single tier: an ordered stage of jobs of similar cost."""

    model_config = {"frozen": True}

    ordinal: int = Field(ge=1)
    name: str
    jobs: list[JobSpec] = Field(min_length=1)
    runner_class: str = "shared"
    fail_fast: FailFastPolicy = FailFastPolicy.COLLECT_ALL
    eligibility: EligibilityPredicate = Field(default_factory=EligibilityPredicate)
    timeout: str | float = "30m"
    timeout_policy: TimeoutPolicy = TimeoutPolicy.FAILURE
    infra_retries: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def validate_tier(self) -> TierDefinition:
        ids = [j.id for j in self.jobs]
        dupes = sorted({jid for jid in ids if ids.count(jid) > 1})
        if dupes:
            raise ValueError(f"Tier '{self.name}': duplicate job IDs {dupes}")
        parse_duration_seconds(self.timeout)
        for job in self.jobs:
            if job.timeout is not None:
                parse_duration_seconds(job.timeout)
        return self

    def job_timeout(self, job: JobSpec) -> float:
        """Timeout in seconds for one of this tier's jobs."""
        return parse_duration_seconds(job.timeout if job.timeout is not None else self.timeout)

    def job_runner_class(self, job: JobSpec) -> str:
        return job.runner_class or self.runner_class

    def runner_classes(self) -> set[str]:
        return {self.job_runner_class(j) for j in self.jobs}


# ── Publication & Concurrency ────────────────────────────────────────────────


class ArtifactTarget(BaseModel):
    """Where terminal-tier build products go."""

    model_config = {"frozen": True}

    kind: ArtifactKind
    destination: str


class PublicationConfig(BaseModel):
    """Which refs publish terminal-tier artifacts, and where to."""

    model_config = {"frozen": True}

    branches: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    targets: list[ArtifactTarget] = Field(default_factory=list)

    def eligible(self, ctx: TriggerContext) -> bool:
        if ctx.is_chained:
            return False
        if ctx.kind in (EventKind.PUSH, EventKind.SCHEDULED):
            return match_any(ctx.ref, self.branches)
        if ctx.kind == EventKind.TAG:
            return match_any(ctx.ref, self.tags)
        return False


class ConcurrencyConfig(BaseModel):
    model_config = {"frozen": True}

    key: str = "{pipeline}:{ref}"
    supersede_grace: str | float = "30s"

    @field_validator("key")
    @classmethod
    def _validate_key(cls, v: str) -> str:
        try:
            v.format(pipeline="p", ref="r", kind="k")
        except (KeyError, IndexError) as exc:
            raise ValueError(f"Concurrency key template has unknown field: {exc}") from exc
        return v

    def key_for(self, pipeline: str, ctx: TriggerContext) -> str:
        return self.key.format(pipeline=pipeline, ref=ctx.ref_key, kind=ctx.kind.value)


class PipelineConfig(BaseModel):
    """A complete tiered pipeline."""

    model_config = {"frozen": True}

    description: str = ""
    tiers: list[TierDefinition] = Field(min_length=1)
    paths_ignore: list[str] = Field(default_factory=list)
    publication: PublicationConfig = Field(default_factory=PublicationConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    chain_on_success: bool = False  # Re-trigger terminal tier after a proposed change passes
    log_url_template: str | None = None  # e.g. https://ci/runs/{run_id}/{tier}/{job}

    @model_validator(mode="after")
    def validate_ordinals(self) -> PipelineConfig:
        ordinals = [t.ordinal for t in self.tiers]
        expected = list(range(1, len(self.tiers) + 1))
        if ordinals != expected:
            raise ValueError(
                f"Tier ordinals must be 1..{len(self.tiers)} in order without gaps, got {ordinals}"
            )
        names = [t.name for t in self.tiers]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate tier names: {names}")
        return self

    @property
    def terminal_tier(self) -> TierDefinition:
        return self.tiers[-1]

    def excludes_all(self, paths: frozenset[str] | list[str]) -> bool:
        """True when every changed path matches ``paths_ignore``."""
        if not self.paths_ignore or not paths:
            return False
        return all(match_any(p, self.paths_ignore) for p in paths)


# ── Top-Level Config ─────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    model_config = {"frozen": True}

    name: str
    default_branch: str = "main"


class RuntimeConfig(BaseModel):
    model_config = {"frozen": True}

    data_dir: str | None = None
    queue_size: int = 1000
    webhook_rate_limit: int = 60  # deliveries per minute, 0 = unlimited


class TierGateConfig(BaseModel):
    """Top-level tiergate configuration (matches .tiergate/config.yaml)."""

    model_config = {"frozen": True}

    project: ProjectConfig
    runners: dict[str, RunnerClassConfig] = Field(default_factory=dict)
    pipelines: dict[str, PipelineConfig] = Field(min_length=1)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @model_validator(mode="before")
    @classmethod
    def _merge_default_runners(cls, data: Any) -> Any:
        if isinstance(data, dict):
            merged: dict[str, Any] = {k: dict(v) for k, v in DEFAULT_RUNNER_CLASSES.items()}
            for name, override in (data.get("runners") or {}).items():
                if isinstance(override, dict):
                    merged[name] = {**merged.get(name, {}), **override}
                else:
                    merged[name] = override
            data = {**data, "runners": merged}
        return data

    @model_validator(mode="after")
    def validate_references(self) -> TierGateConfig:
        errors: list[str] = []
        for name, pipeline in self.pipelines.items():
            if not NAME_PATTERN.match(name):
                errors.append(f"Pipeline name '{name}' must match {NAME_PATTERN.pattern}")
            for tier in pipeline.tiers:
                for runner in sorted(tier.runner_classes()):
                    if runner not in self.runners:
                        errors.append(
                            f"Pipeline '{name}', tier '{tier.name}': "
                            f"unknown runner class '{runner}'"
                        )
        if errors:
            raise ValueError("; ".join(errors))
        return self

    def get_pipeline(self, name: str) -> PipelineConfig | None:
        return self.pipelines.get(name)


# ── Helpers ──────────────────────────────────────────────────────────────────


def match_any(value: str, patterns: list[str]) -> bool:
    """Glob match against any pattern. ``*`` also crosses ``/``."""
    return any(fnmatch.fnmatchcase(value, pattern) for pattern in patterns)


def parse_duration_seconds(duration: str | float | int) -> float:
    """Parse a duration like '30s', '5m', '2h', '1d', '250ms' or a number of seconds.

    Raises ValueError on invalid format.
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, (int, float)):
        if duration <= 0:
            raise ValueError(f"Duration must be positive, got {duration}")
        return float(duration)
    match = re.match(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)$", duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number><ms|s|m|h|d>"
        raise ValueError(msg)
    value = float(match.group(1))
    multipliers = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}
    seconds = value * multipliers[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive, got '{duration}'")
    return seconds


def parse_config(raw: dict[str, Any]) -> TierGateConfig:
    """Validate a raw config mapping. Raises ConfigError."""
    try:
        return TierGateConfig(**raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid tiergate config: {exc}") from exc


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(config_dir: Path) -> TierGateConfig:
    """Load tiergate configuration from a .tiergate/ directory.

    Args:
        config_dir: Path to the .tiergate/ directory.

    Returns:
        Validated, immutable TierGateConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ConfigError: If config validation fails.
    """
    config_path = config_dir / CONFIG_FILENAME
    if not config_path.exists():
        raise FileNotFoundError(f"tiergate config not found: {config_path}")

    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Cannot parse {config_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    # Environment variable overrides for deployment
    data_dir = os.environ.get("TIERGATE_DATA_DIR")
    if data_dir:
        runtime = dict(raw.get("runtime") or {})
        runtime["data_dir"] = data_dir
        raw["runtime"] = runtime

    config = parse_config(raw)
    logger.info(
        "Loaded tiergate config: project=%s pipelines=%s",
        config.project.name,
        sorted(config.pipelines),
    )
    return config
