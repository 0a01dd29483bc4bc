"""Trigger evaluation — from raw change events to an eligible tier set.

Key exports:
    parse_event — validate a raw event descriptor (raises InvalidTrigger)
    event_from_github — translate a GitHub webhook delivery into a ChangeEvent
    manual_event — synthesize a manual ChangeEvent for a named pipeline
    TriggerEvaluator — compute TriggerContext + eligible tiers for one pipeline
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from tiergate.config import PipelineConfig, TierDefinition
from tiergate.models import ChangeEvent, EventKind, InvalidTrigger, TriggerContext

logger = logging.getLogger("tiergate.pipeline.trigger")

_BRANCH_PREFIX = "refs/heads/"
_TAG_PREFIX = "refs/tags/"

# pull_request actions that put new code in front of the pipeline
PULL_REQUEST_ACTIONS = {"opened", "synchronize", "reopened", "ready_for_review"}


# ── Event Parsing ────────────────────────────────────────────────────────────


def parse_event(raw: Any) -> ChangeEvent:
    """Validate a structured event descriptor.

    Raises:
        InvalidTrigger: the descriptor is malformed. The run never starts.
    """
    if not isinstance(raw, dict):
        raise InvalidTrigger(f"Event descriptor must be an object, got {type(raw).__name__}")

    data = dict(raw)
    if "paths" in data and "changed_paths" not in data:
        data["changed_paths"] = data.pop("paths")
    if "draft" in data and "is_draft" not in data:
        data["is_draft"] = data.pop("draft")

    kind = data.get("kind")
    if kind is None:
        raise InvalidTrigger("Event descriptor is missing 'kind'")
    try:
        data["kind"] = EventKind(kind)
    except ValueError:
        valid = ", ".join(k.value for k in EventKind)
        raise InvalidTrigger(f"Unknown event kind '{kind}' (expected one of: {valid})") from None

    ref = data.get("ref")
    if isinstance(ref, int) and not isinstance(ref, bool):
        ref = str(ref)
    if not isinstance(ref, str) or not ref.strip():
        raise InvalidTrigger("Event descriptor requires a non-empty 'ref'")
    data["ref"] = _normalize_ref(ref.strip())

    paths = data.get("changed_paths")
    if paths is not None and (
        not isinstance(paths, list) or not all(isinstance(p, str) and p for p in paths)
    ):
        raise InvalidTrigger("'changed_paths' must be a list of non-empty strings")

    try:
        event = ChangeEvent(**data)
    except ValidationError as exc:
        raise InvalidTrigger(f"Malformed event descriptor: {exc}") from exc

    _check_consistency(event)
    return event


def _check_consistency(event: ChangeEvent) -> None:
    if event.kind == EventKind.PROPOSED_CHANGE and not event.ref.isdigit():
        raise InvalidTrigger(
            f"Proposed-change ref must be the change number, got '{event.ref}'"
        )
    if event.upstream_run_id is not None and event.kind != EventKind.PROPOSED_CHANGE:
        raise InvalidTrigger("Only proposed_change events can chain from an upstream run")
    if event.pipeline is not None and event.kind != EventKind.MANUAL:
        raise InvalidTrigger("Only manual events can target a named pipeline")


def _normalize_ref(ref: str) -> str:
    for prefix in (_BRANCH_PREFIX, _TAG_PREFIX):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def manual_event(pipeline: str, ref: str, *, changed_paths: list[str] | None = None) -> ChangeEvent:
    """Synthesize a manual event for a named pipeline (debugging entry point)."""
    return parse_event(
        {
            "kind": EventKind.MANUAL.value,
            "ref": ref,
            "pipeline": pipeline,
            "changed_paths": changed_paths or [],
        }
    )


def event_from_github(
    event_type: str,
    payload: dict[str, Any],
    *,
    delivery_id: str | None = None,
    default_branch: str = "main",
    changed_paths: list[str] | None = None,
) -> ChangeEvent | None:
    """Translate a GitHub webhook delivery.

    Returns None for deliveries that never start a run (unsupported events,
    branch deletions, pull_request actions that bring no new code).

    ``changed_paths`` supplies the files of a pull_request, which the delivery
    itself does not list. Without it the proposed change matches every path.
    """
    raw: dict[str, Any]
    match event_type:
        case "push":
            if payload.get("deleted"):
                return None
            ref = payload.get("ref") or ""
            kind = EventKind.TAG if ref.startswith(_TAG_PREFIX) else EventKind.PUSH
            raw = {"kind": kind.value, "ref": ref, "changed_paths": _commit_paths(payload)}
        case "pull_request":
            if payload.get("action") not in PULL_REQUEST_ACTIONS:
                return None
            pr = payload.get("pull_request") or {}
            number = payload.get("number", pr.get("number"))
            raw = {
                "kind": EventKind.PROPOSED_CHANGE.value,
                "ref": number,
                "is_draft": bool(pr.get("draft", False)),
            }
            if changed_paths is not None:
                raw["changed_paths"] = changed_paths
        case "schedule":
            raw = {"kind": EventKind.SCHEDULED.value, "ref": payload.get("ref") or default_branch}
        case "workflow_dispatch":
            inputs = payload.get("inputs") or {}
            raw = {
                "kind": EventKind.MANUAL.value,
                "ref": payload.get("ref") or default_branch,
                "pipeline": inputs.get("pipeline"),
            }
        case _:
            logger.debug("Ignoring unsupported GitHub event '%s'", event_type)
            return None

    raw["delivery_id"] = delivery_id
    return parse_event(raw)


def _commit_paths(payload: dict[str, Any]) -> list[str]:
    paths: set[str] = set()
    for commit in payload.get("commits") or []:
        for key in ("added", "modified", "removed"):
            paths.update(p for p in commit.get(key) or [] if p)
    return sorted(paths)


# ── Evaluation ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TriggerEvaluation:
    """Outcome of evaluating one event against one pipeline."""

    context: TriggerContext
    eligible: tuple[TierDefinition, ...] = field(default_factory=tuple)
    skip_reason: str | None = None

    @property
    def skipped(self) -> bool:
        return not self.eligible

    @property
    def eligible_ordinals(self) -> list[int]:
        return [t.ordinal for t in self.eligible]


class TriggerEvaluator:
    """Computes which tiers of one pipeline are eligible for an event."""

    def __init__(self, name: str, pipeline: PipelineConfig):
        self._name = name
        self._pipeline = pipeline

    def evaluate(self, event: ChangeEvent) -> TriggerEvaluation:
        ctx = TriggerContext.from_event(event)

        # Manual runs bypass path filtering; chained runs already passed it
        if ctx.kind != EventKind.MANUAL and not ctx.is_chained:
            if self._pipeline.excludes_all(ctx.changed_paths):
                logger.info(
                    "Pipeline '%s': all %d changed path(s) excluded, skipping (%s %s)",
                    self._name,
                    len(ctx.changed_paths),
                    ctx.kind.value,
                    ctx.ref,
                )
                return TriggerEvaluation(
                    context=ctx, skip_reason="all changed paths match paths_ignore"
                )

        eligible = tuple(t for t in self._pipeline.tiers if t.eligibility.matches(ctx))
        if not eligible:
            logger.info(
                "Pipeline '%s': no eligible tiers for %s %s", self._name, ctx.kind.value, ctx.ref
            )
            return TriggerEvaluation(context=ctx, skip_reason="no eligible tiers")

        logger.debug(
            "Pipeline '%s': eligible tiers %s for %s %s",
            self._name,
            [t.ordinal for t in eligible],
            ctx.kind.value,
            ctx.ref,
        )
        return TriggerEvaluation(context=ctx, eligible=eligible)
