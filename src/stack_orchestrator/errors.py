"""
stack_orchestrator.errors

Orchestrator error taxonomy.

Responsibilities:
- Give every failure mode a distinct type so callers can react deliberately
  (retry transport errors, surface structural errors, ask for confirmation).
- Carry enough structured context for plain-language relaying by the agent.
"""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base class; `code` is the stable machine-readable identifier."""

    code = "ORCHESTRATOR_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidRecipeId(OrchestratorError):
    code = "INVALID_RECIPE_ID"

    def __init__(self, recipe_id: str) -> None:
        self.recipe_id = recipe_id
        super().__init__(f"'{recipe_id}' is not a valid recipe identifier")


class RecipeNotFound(OrchestratorError):
    code = "RECIPE_NOT_FOUND"

    def __init__(self, recipe_id: str) -> None:
        self.recipe_id = recipe_id
        super().__init__(f"Recipe '{recipe_id}' not found in catalog")


class RecipeExists(OrchestratorError):
    code = "RECIPE_EXISTS"

    def __init__(self, recipe_id: str) -> None:
        self.recipe_id = recipe_id
        super().__init__(f"Recipe '{recipe_id}' is already published")


class CycleDetected(OrchestratorError):
    code = "CYCLE_DETECTED"

    def __init__(self, chain: list[str]) -> None:
        self.chain = list(chain)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.chain))


class CatalogUnavailable(OrchestratorError):
    code = "CATALOG_UNAVAILABLE"


class ChartSearchUnavailable(OrchestratorError):
    code = "CHART_SEARCH_UNAVAILABLE"


class ClusterUnavailable(OrchestratorError):
    """
    Cluster API failure. `retryable` is False when the API answered but rejected the
    request (bad manifest, forbidden); those are not worth a second attempt.
    """

    code = "CLUSTER_UNAVAILABLE"

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class DeployConflict(OrchestratorError):
    code = "DEPLOY_CONFLICT"

    def __init__(self, stack_id: str) -> None:
        self.stack_id = stack_id
        super().__init__(f"Another change to stack '{stack_id}' is still in progress")


class NodeTimeout(OrchestratorError):
    code = "NODE_TIMEOUT"

    def __init__(self, node_id: str, status: str, seconds: float) -> None:
        self.node_id = node_id
        self.status = status
        self.seconds = seconds
        super().__init__(f"Timed out after {seconds:.0f}s in {status}")


class StackNotFound(OrchestratorError):
    code = "STACK_NOT_FOUND"

    def __init__(self, stack_id: str) -> None:
        self.stack_id = stack_id
        super().__init__(f"Stack '{stack_id}' not found")


class ServiceNotFound(OrchestratorError):
    code = "SERVICE_NOT_FOUND"

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Service '{node_id}' not found")


class ActionNotFound(OrchestratorError):
    code = "ACTION_NOT_FOUND"

    def __init__(self, action_id: str) -> None:
        self.action_id = action_id
        super().__init__(f"Pending action '{action_id}' not found")


class InvalidTransition(OrchestratorError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal lifecycle transition {current} -> {target}")


class ConfirmationRequired(OrchestratorError):
    """
    Raised by the tool router when a destructive call is parked.
    The router converts it into a confirmation request result for the agent.
    """

    code = "CONFIRMATION_REQUIRED"

    def __init__(self, action_id: str, summary: str, payload: dict[str, Any]) -> None:
        self.action_id = action_id
        self.summary = summary
        self.payload = payload
        super().__init__(summary)


class Unauthorized(OrchestratorError):
    code = "UNAUTHORIZED"


class Forbidden(OrchestratorError):
    code = "FORBIDDEN"


# --- Module Notes -----------------------------------------------------------
# HTTP status mapping lives in `api.errors`; services raise these types only.
