"""
stack_orchestrator.auth.models

Auth domain models.

Responsibilities:
- Define the request context (`RequestContext`) passed explicitly into every
  orchestrator entry point.
"""

from __future__ import annotations

from dataclasses import dataclass

ROLES = frozenset({"owner", "admin", "member", "viewer"})


@dataclass(frozen=True, slots=True)
class RequestContext:
    """
    Caller identity as issued by the session provider.
    """

    user_id: str
    tenant_id: str
    role: str

    @property
    def can_mutate(self) -> bool:
        # Viewers may read stacks and stats but never change the cluster.
        return self.role in ("owner", "admin", "member")


# --- Module Notes -----------------------------------------------------------
# Services never read identity from ambient state; they receive this object.
