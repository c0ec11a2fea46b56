"""
stack_orchestrator.orchestrator.state

Typed state schema for the rollout graph.

Responsibilities:
- Define the contract between rollout nodes (inputs/outputs).
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, TypedDict

from stack_orchestrator.orchestrator.reducers import append_steps, union_ids


class RolloutState(TypedDict, total=False):
    # Identifiers
    stack_id: str
    # Stack generation this rollout was planned against; a newer one supersedes it.
    generation: int
    mode: Literal["apply", "teardown"]

    # Work list: node ids still to process, in execution order.
    queue: list[str]
    current: str | None
    # Desired config per node id (apply mode only).
    configs: dict[str, dict[str, Any]]
    # Nodes re-applied even when their config is unchanged.
    restarts: list[str]

    # Outcomes
    dependencies_ready: bool
    superseded: bool
    blocked: Annotated[list[str], union_ids]
    failed: Annotated[list[str], union_ids]
    steps: Annotated[list[dict[str, Any]], append_steps]


# --- Module Notes -----------------------------------------------------------
# The state lives only for one rollout; durable progress is the node rows themselves,
# so a crashed rollout is recovered by re-running deploy, not by replaying this state.
