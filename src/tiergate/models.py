"""Core ingress models for tiergate.

A ``ChangeEvent`` is the raw descriptor delivered by the event ingress (HTTP,
GitHub webhook translation, or the CLI). The Trigger Evaluator turns it into an
immutable ``TriggerContext`` before any tier is considered.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class TierGateError(Exception):
    """Base class for all tiergate errors."""


class InvalidTrigger(TierGateError):
    """Malformed event descriptor. The run never starts."""


# ── Event Kind ───────────────────────────────────────────────────────────────


class EventKind(str, enum.Enum):
    """Kinds of change events that can start a pipeline run."""

    PUSH = "push"
    PROPOSED_CHANGE = "proposed_change"
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    TAG = "tag"


# ── Raw Event Descriptor ─────────────────────────────────────────────────────


class ChangeEvent(BaseModel):
    """A change event as received from ingress, before evaluation."""

    kind: EventKind
    ref: str = Field(description="Branch name, tag name, or proposed-change number")
    changed_paths: list[str] = Field(default_factory=list)
    is_draft: bool = False
    upstream_run_id: str | None = Field(
        default=None, description="Run that triggered this one (chained triggers)"
    )
    pipeline: str | None = Field(default=None, description="Target pipeline (manual only)")
    delivery_id: str | None = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Trigger Context ──────────────────────────────────────────────────────────


class TriggerContext(BaseModel):
    """Immutable view of the event a run was started for."""

    model_config = {"frozen": True}

    kind: EventKind
    ref: str
    changed_paths: frozenset[str] = frozenset()
    is_draft: bool = False
    upstream_run_id: str | None = None

    @property
    def is_chained(self) -> bool:
        return self.upstream_run_id is not None

    @property
    def ref_key(self) -> str:
        """Normalized ref identity used in concurrency keys.

        Proposed changes are keyed by number so every update of the same change
        lands on the same key, whatever branch it comes from.
        """
        if self.kind == EventKind.PROPOSED_CHANGE:
            return f"pr-{self.ref}"
        if self.kind == EventKind.TAG:
            return f"tag-{self.ref}"
        return self.ref

    @classmethod
    def from_event(cls, event: ChangeEvent) -> TriggerContext:
        return cls(
            kind=event.kind,
            ref=event.ref,
            changed_paths=frozenset(event.changed_paths),
            is_draft=event.is_draft,
            upstream_run_id=event.upstream_run_id,
        )
