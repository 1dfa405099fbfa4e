"""Execution planner: layer the dependency graph into waves.

Wave 0 holds every model with no model dependencies; wave N holds every
remaining model whose dependencies all sit in earlier waves. Models inside
a wave are independent of each other and may run concurrently.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from sqlwave.graph import DependencyGraph

logger = structlog.get_logger(__name__)


class Wave(BaseModel):
    """A set of mutually independent models."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    index: int = Field(..., ge=0, description="Wave number, 0-based")
    models: list[str] = Field(default_factory=list, description="Models, declaration order")


class ExecutionPlan(BaseModel):
    """Ordered waves of models.

    Example:
        >>> execution_plan = plan(graph)
        >>> [w.models for w in execution_plan.waves]
        [['stg_tpch_orders'], ['fct_orders']]
        >>> execution_plan.wave_of("fct_orders")
        1
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    waves: list[Wave] = Field(default_factory=list)

    @property
    def models(self) -> list[str]:
        """Every planned model, wave by wave."""
        return [name for wave in self.waves for name in wave.models]

    def wave_of(self, name: str) -> int:
        """Return the wave index of a model.

        Raises:
            KeyError: If the model is not part of the plan.
        """
        for wave in self.waves:
            if name in wave.models:
                return wave.index
        raise KeyError(name)

    def __len__(self) -> int:
        return len(self.waves)

    def to_text(self) -> str:
        """Render the plan as plain text."""
        lines: list[str] = []
        for wave in self.waves:
            lines.append(f"wave {wave.index}: {', '.join(wave.models)}")
        return "\n".join(lines) if lines else "(nothing to run)"


def plan(graph: DependencyGraph, selected: Iterable[str] | None = None) -> ExecutionPlan:
    """Layer the graph into waves using in-degree counting.

    Args:
        graph: Acyclic dependency graph.
        selected: Models to plan. Dependencies outside the selection are
            treated as already materialized. None plans every model.

    Returns:
        ExecutionPlan where every producer sits in an earlier wave than its
        consumers, and each wave lists models in declaration order.
    """
    names = graph.models if selected is None else [m for m in graph.models if m in set(selected)]
    members = set(names)

    in_degree = {
        name: len({u for u in graph.upstream(name) if u in members}) for name in names
    }
    waves: list[Wave] = []
    ready = [name for name in names if in_degree[name] == 0]

    while ready:
        waves.append(Wave(index=len(waves), models=ready))
        next_ready: set[str] = set()
        for name in ready:
            for consumer in graph.downstream(name):
                if consumer not in members:
                    continue
                in_degree[consumer] -= 1
                if in_degree[consumer] == 0:
                    next_ready.add(consumer)
        ready = [name for name in names if name in next_ready]

    planned = sum(len(w.models) for w in waves)
    if planned != len(names):
        missing = sorted(members - {m for w in waves for m in w.models})
        raise ValueError(f"Graph is not acyclic; unplanned models: {', '.join(missing)}")

    logger.debug("plan_built", waves=len(waves), models=planned)
    return ExecutionPlan(waves=waves)
