"""
stack_orchestrator.orchestrator.nodes

Rollout graph nodes and routing functions.

Responsibilities:
- Walk the rollout work list one service node at a time.
- Gate each create on its dependencies being RUNNING.
- Stop as soon as a newer stack generation supersedes this rollout.

Nodes return partial state updates; cluster and database work is delegated to
`RolloutOps` (implemented by the deployer).
"""

from __future__ import annotations

from typing import Any, Literal, Protocol

from stack_orchestrator.orchestrator.state import RolloutState

StepOutcome = Literal["applied", "skipped", "failed", "blocked", "superseded"]
DependencyOutcome = Literal["ready", "blocked", "superseded"]


class RolloutOps(Protocol):
    async def is_superseded(self, *, stack_id: str, generation: int) -> bool: ...

    async def wait_for_dependencies(
        self, *, stack_id: str, node_id: str, generation: int
    ) -> DependencyOutcome: ...

    async def apply_node(
        self,
        *,
        stack_id: str,
        node_id: str,
        generation: int,
        config: dict[str, Any],
        restart: bool = False,
    ) -> StepOutcome: ...

    async def teardown_node(
        self, *, stack_id: str, node_id: str, generation: int
    ) -> StepOutcome: ...

    async def settle(self, *, stack_id: str, generation: int) -> None: ...


def _step(node_id: str | None, step: str, outcome: str) -> dict[str, Any]:
    return {"node_id": node_id, "step": step, "outcome": outcome}


def _current(state: RolloutState) -> str:
    node_id = state.get("current")
    if node_id is None:
        raise RuntimeError("rollout step routed without a current node")
    return node_id


async def select_next_node(state: RolloutState, *, ops: RolloutOps) -> dict[str, Any]:
    if await ops.is_superseded(stack_id=state["stack_id"], generation=state["generation"]):
        return {"superseded": True, "current": None, "steps": [_step(None, "select", "superseded")]}
    queue = list(state.get("queue", []))
    if not queue:
        return {"current": None}
    return {"current": queue[0], "queue": queue[1:], "dependencies_ready": False}


async def await_dependencies_node(state: RolloutState, *, ops: RolloutOps) -> dict[str, Any]:
    node_id = _current(state)
    outcome = await ops.wait_for_dependencies(
        stack_id=state["stack_id"], node_id=node_id, generation=state["generation"]
    )
    update: dict[str, Any] = {
        "dependencies_ready": outcome == "ready",
        "steps": [_step(node_id, "dependencies", outcome)],
    }
    if outcome == "superseded":
        update["superseded"] = True
    elif outcome == "blocked":
        update["blocked"] = [node_id]
    return update


async def apply_node_step(state: RolloutState, *, ops: RolloutOps) -> dict[str, Any]:
    node_id = _current(state)
    outcome = await ops.apply_node(
        stack_id=state["stack_id"],
        node_id=node_id,
        generation=state["generation"],
        config=dict(state.get("configs", {}).get(node_id, {})),
        restart=node_id in state.get("restarts", []),
    )
    update: dict[str, Any] = {"steps": [_step(node_id, "apply", outcome)]}
    if outcome == "superseded":
        update["superseded"] = True
    elif outcome == "failed":
        update["failed"] = [node_id]
    return update


async def teardown_node_step(state: RolloutState, *, ops: RolloutOps) -> dict[str, Any]:
    node_id = _current(state)
    outcome = await ops.teardown_node(
        stack_id=state["stack_id"], node_id=node_id, generation=state["generation"]
    )
    update: dict[str, Any] = {"steps": [_step(node_id, "teardown", outcome)]}
    if outcome == "superseded":
        update["superseded"] = True
    elif outcome == "failed":
        update["failed"] = [node_id]
    elif outcome == "blocked":
        update["blocked"] = [node_id]
    return update


async def settle_node(state: RolloutState, *, ops: RolloutOps) -> dict[str, Any]:
    await ops.settle(stack_id=state["stack_id"], generation=state["generation"])
    return {"steps": [_step(None, "settle", "done")]}


def route_after_select(
    state: RolloutState,
) -> Literal["await_dependencies", "teardown_node", "settle", "end"]:
    if state.get("superseded"):
        return "end"
    if state.get("current") is None:
        return "settle"
    if state["mode"] == "teardown":
        return "teardown_node"
    return "await_dependencies"


def route_after_dependencies(state: RolloutState) -> Literal["apply_node", "select_next", "end"]:
    if state.get("superseded"):
        return "end"
    if state.get("dependencies_ready"):
        return "apply_node"
    # Blocked: this node is marked FAILED; later nodes are still attempted.
    return "select_next"


def route_after_step(state: RolloutState) -> Literal["select_next", "end"]:
    if state.get("superseded"):
        return "end"
    return "select_next"


# --- Module Notes -----------------------------------------------------------
# A failed or blocked node never aborts the walk; its dependents block on it in turn,
# and unrelated branches of the DAG still roll out. Teardown runs the other way: a
# dependency is kept while any dependent it serves is still live.
