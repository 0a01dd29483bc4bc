"""Tier gate — the waterfall state machine at the heart of a pipeline run.

The gate is a pure transition function over a small tagged-variant state. It
never runs jobs. The coordinator asks it which tier to run next, runs that
tier, and hands the TierResult back; the only way to learn about tier n+1 is
to hand in tier n's aggregate, so two tiers can never be in flight at once.

States:
    NotStarted → AtTier(k) → ... → Succeeded | Failed(k) | Skipped
    any non-terminal state → Superseded (on cancellation)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence, Union

from tiergate.config import TierDefinition
from tiergate.models import TierGateError
from tiergate.pipeline.models import RunVerdict, SkipReason, TierAggregate, TierResult


class GateTransitionError(TierGateError):
    """Illegal transition: wrong tier, or a transition out of a terminal state."""


# ── States ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class NotStarted:
    pass


@dataclass(frozen=True)
class AtTier:
    ordinal: int
    executed: bool = False  # Whether any earlier tier actually ran jobs


@dataclass(frozen=True)
class Succeeded:
    pass


@dataclass(frozen=True)
class Failed:
    ordinal: int


@dataclass(frozen=True)
class Skipped:
    pass


@dataclass(frozen=True)
class Superseded:
    pass


GateState = Union[NotStarted, AtTier, Succeeded, Failed, Skipped, Superseded]

TERMINAL_STATES = (Succeeded, Failed, Skipped, Superseded)


def is_terminal(state: GateState) -> bool:
    return isinstance(state, TERMINAL_STATES)


def verdict_for(state: GateState) -> RunVerdict:
    """Map a gate state onto the run verdict."""
    match state:
        case NotStarted():
            return RunVerdict.PENDING
        case AtTier():
            return RunVerdict.RUNNING
        case Succeeded():
            return RunVerdict.SUCCEEDED
        case Failed():
            return RunVerdict.FAILED
        case Skipped():
            return RunVerdict.SKIPPED
        case Superseded():
            return RunVerdict.SUPERSEDED
    raise GateTransitionError(f"Unknown gate state: {state!r}")


@dataclass(frozen=True)
class Transition:
    """New state plus the tiers passed over on the way to it."""

    state: GateState
    skipped: tuple[TierResult, ...] = field(default_factory=tuple)


# ── Gate ─────────────────────────────────────────────────────────────────────


class TierGate:
    """Holds the ordered tiers and the eligible set for one run."""

    def __init__(self, tiers: Sequence[TierDefinition], eligible: Iterable[int]):
        self._tiers = {t.ordinal: t for t in tiers}
        self._order = sorted(self._tiers)
        self._eligible = frozenset(eligible)
        unknown = self._eligible - set(self._order)
        if unknown:
            raise GateTransitionError(f"Eligible tiers {sorted(unknown)} are not defined")

    @property
    def eligible(self) -> frozenset[int]:
        return self._eligible

    def tier(self, ordinal: int) -> TierDefinition:
        return self._tiers[ordinal]

    def start(self, state: GateState = NotStarted()) -> Transition:
        """Leave NOT_STARTED for the first eligible tier."""
        if not isinstance(state, NotStarted):
            raise GateTransitionError(f"Cannot start from {state!r}")
        return self._seek(after=0, executed=False)

    def advance(self, state: GateState, result: TierResult) -> Transition:
        """Feed the aggregate of the tier currently running."""
        if not isinstance(state, AtTier):
            raise GateTransitionError(f"No tier is running in state {state!r}")
        if result.ordinal != state.ordinal:
            raise GateTransitionError(
                f"Result for tier {result.ordinal} while tier {state.ordinal} is running"
            )

        if result.aggregate.is_failing:
            # Fatal: remaining tiers are not evaluated
            return Transition(state=Failed(state.ordinal))

        if result.reason == SkipReason.SUPERSEDED:
            return Transition(state=Superseded())

        executed = state.executed or (
            result.aggregate == TierAggregate.SUCCESS and result.executed
        )
        return self._seek(after=state.ordinal, executed=executed)

    def cancel(self, state: GateState) -> Transition:
        """Supersede the run. Terminal states are left alone."""
        if is_terminal(state):
            return Transition(state=state)
        return Transition(state=Superseded())

    def _seek(self, *, after: int, executed: bool) -> Transition:
        skipped: list[TierResult] = []
        for ordinal in self._order:
            if ordinal <= after:
                continue
            if ordinal in self._eligible:
                return Transition(state=AtTier(ordinal, executed), skipped=tuple(skipped))
            tier = self._tiers[ordinal]
            skipped.append(TierResult.skipped(ordinal, tier.name, SkipReason.INELIGIBLE))
        final: GateState = Succeeded() if executed else Skipped()
        return Transition(state=final, skipped=tuple(skipped))
