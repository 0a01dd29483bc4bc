"""Runner pool — classes of execution capacity.

The pool does no scheduling of its own. It resolves runner class names from
configuration into capability and cost tags the dispatcher attaches to jobs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from tiergate.config import RunnerClassConfig
from tiergate.models import TierGateError

logger = logging.getLogger(__name__)


class UnknownRunnerClass(TierGateError, KeyError):
    """A job referenced a runner class the pool does not know."""


@dataclass(frozen=True)
class RunnerClass:
    name: str
    cost: float = 1.0
    labels: tuple[str, ...] = field(default_factory=tuple)
    shared: bool = False
    available: bool = True


class RunnerPool:
    """Named runner classes shared by every active pipeline run."""

    def __init__(self, classes: Mapping[str, RunnerClassConfig]):
        self._classes = {
            name: RunnerClass(
                name=name,
                cost=cfg.cost,
                labels=tuple(cfg.labels),
                shared=cfg.shared,
                available=cfg.available,
            )
            for name, cfg in classes.items()
        }

    def resolve(self, name: str) -> RunnerClass:
        try:
            return self._classes[name]
        except KeyError:
            raise UnknownRunnerClass(
                f"Unknown runner class '{name}'. Available: {self.names()}"
            ) from None

    def names(self) -> list[str]:
        return sorted(self._classes)

    def cost(self, runner_names: Iterable[str]) -> float:
        """Total cost units for one job on each of the given runner classes."""
        return sum(self.resolve(name).cost for name in runner_names)
