"""
stack_orchestrator.orchestrator.graph

Rollout graph compilation (LangGraph).

Responsibilities:
- Wire the rollout nodes into a state machine:
  select_next -> (await_dependencies -> apply_node | teardown_node) -> select_next
  ... -> settle -> END; a superseded rollout goes straight to END.
- Bind the deployer's `RolloutOps` into the node callables.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from stack_orchestrator.orchestrator.nodes import (
    RolloutOps,
    apply_node_step,
    await_dependencies_node,
    route_after_dependencies,
    route_after_select,
    route_after_step,
    select_next_node,
    settle_node,
    teardown_node_step,
)
from stack_orchestrator.orchestrator.state import RolloutState


def build_rollout_graph(*, ops: RolloutOps):
    """
    Returns a compiled LangGraph runnable.
    """

    try:
        from langgraph.graph import END, StateGraph  # type: ignore[import-not-found]
    except Exception as e:  # pragma: no cover
        raise RuntimeError(
            "LangGraph is not available. Install the project dependencies."
        ) from e

    graph = StateGraph(RolloutState)

    graph.add_node("select_next", _bind_ops(select_next_node, ops))
    graph.add_node("await_dependencies", _bind_ops(await_dependencies_node, ops))
    graph.add_node("apply_node", _bind_ops(apply_node_step, ops))
    graph.add_node("teardown_node", _bind_ops(teardown_node_step, ops))
    graph.add_node("settle", _bind_ops(settle_node, ops))

    graph.set_entry_point("select_next")

    graph.add_conditional_edges(
        "select_next",
        route_after_select,
        {
            "await_dependencies": "await_dependencies",
            "teardown_node": "teardown_node",
            "settle": "settle",
            "end": END,
        },
    )
    graph.add_conditional_edges(
        "await_dependencies",
        route_after_dependencies,
        {"apply_node": "apply_node", "select_next": "select_next", "end": END},
    )
    graph.add_conditional_edges(
        "apply_node", route_after_step, {"select_next": "select_next", "end": END}
    )
    graph.add_conditional_edges(
        "teardown_node", route_after_step, {"select_next": "select_next", "end": END}
    )
    graph.add_edge("settle", END)

    return graph.compile()


def recursion_limit_for(node_count: int) -> int:
    # Up to three graph steps per service node, plus select/settle overhead.
    return 3 * node_count + 10


def _bind_ops(
    fn: Callable[..., Awaitable[dict[str, Any]]],
    ops: RolloutOps,
) -> Callable[[RolloutState], Awaitable[dict[str, Any]]]:
    async def _wrapped(state: RolloutState) -> dict[str, Any]:
        return await fn(state, ops=ops)

    return _wrapped


# --- Module Notes -----------------------------------------------------------
# The graph is compiled per rollout; it is cheap and keeps `ops` bindings explicit.
