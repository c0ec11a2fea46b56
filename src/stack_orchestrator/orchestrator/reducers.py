"""
stack_orchestrator.orchestrator.reducers

Reducers define how LangGraph merges partial state updates from rollout nodes.
"""

from __future__ import annotations

from typing import Any


def append_steps(
    left: list[dict[str, Any]] | None, right: list[dict[str, Any]] | None
) -> list[dict[str, Any]]:
    """
    Append-only reducer for the rollout step log.

    Nodes return `{"steps": [step]}` and this reducer concatenates them in order.
    """

    if not left:
        return list(right or [])
    if not right:
        return list(left)
    return [*left, *right]


def union_ids(left: list[str] | None, right: list[str] | None) -> list[str]:
    # Order-preserving union; a node id is reported once however often it is added.
    return list(dict.fromkeys([*(left or []), *(right or [])]))
