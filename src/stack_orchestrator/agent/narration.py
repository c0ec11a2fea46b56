"""
stack_orchestrator.agent.narration

Plain-language rendering for the agent.

Responsibilities:
- Map lifecycle statuses to consumer-friendly labels.
- Summarize a stack (what is running, what failed and why).
- Diagnose raw service logs into a short explanation plus a suggested next step.
"""

from __future__ import annotations

from dataclasses import dataclass

from stack_orchestrator.db.models import NodeStatus
from stack_orchestrator.orchestrator.snapshot import StackSnapshot

STATUS_LABELS: dict[NodeStatus, str] = {
    NodeStatus.pending: "waiting to start",
    NodeStatus.deploying: "starting up",
    NodeStatus.running: "running",
    NodeStatus.failed: "not working",
    NodeStatus.deleting: "being removed",
    NodeStatus.deleted: "removed",
}


def status_label(status: NodeStatus) -> str:
    return STATUS_LABELS[status]


def describe_stack(snap: StackSnapshot) -> str:
    name = snap.root_recipe_id
    failed = snap.failed_nodes()
    if snap.status == "DELETED":
        return f"{name} has been removed."
    if snap.status == "DELETING":
        return f"{name} is being removed."
    if snap.transitional:
        ready = sum(1 for n in snap.nodes if n.status == NodeStatus.running)
        return f"{name} is still being set up ({ready} of {len(snap.nodes)} services ready)."
    if failed:
        parts = [f"{n.recipe_id}: {n.error or 'failed without a reason'}" for n in failed]
        return f"{name} has problems. " + "; ".join(parts) + "."
    return f"{name} is up and running."


@dataclass(frozen=True, slots=True)
class Diagnosis:
    diagnosis: str
    suggestion: str | None = None


# First match wins; ordered from most to least specific.
_PATTERNS: tuple[tuple[tuple[str, ...], str, str], ...] = (
    (
        ("out of memory", "oomkilled", "oom", "memory limit"),
        "{app} is running out of memory and restarts when it hits its limit.",
        "Raise memory_limit with update_service.",
    ),
    (
        ("connection refused", "econnrefused"),
        "{app} cannot reach a service it depends on; it may still be starting or has stopped.",
        "Check the dependencies with get_status.",
    ),
    (
        ("connection timeout", "etimedout", "timed out"),
        "{app} is waiting on something that does not answer in time.",
        "Wait a minute and check again.",
    ),
    (
        ("permission denied", "access denied", "authentication failed", "password authentication"),
        "{app} is being refused because of credentials or permissions.",
        "Reinstall the app so its credentials are generated again.",
    ),
    (
        ("disk full", "no space left", "enospc"),
        "{app} has run out of storage space.",
        "Free up data or give the app more storage.",
    ),
    (
        ("crashloopbackoff", "crash loop", "back-off restarting"),
        "{app} keeps crashing right after it starts, usually a configuration problem or a missing dependency.",
        "Check that its dependencies are running, then reinstall.",
    ),
)


def diagnose_logs(app: str, logs: str, *, restarts: int = 0) -> Diagnosis:
    lowered = logs.lower()
    for needles, diagnosis, suggestion in _PATTERNS:
        if any(n in lowered for n in needles):
            return Diagnosis(diagnosis.format(app=app), suggestion)

    if restarts > 0:
        plural = "s" if restarts > 1 else ""
        return Diagnosis(
            f"{app} restarted {restarts} time{plural} recently without a clear error in its logs.",
            "Give it more resources with update_service."
            if restarts >= 3
            else "Keep an eye on it; an occasional restart is normal.",
        )
    if len([line for line in logs.splitlines() if line.strip()]) < 5:
        return Diagnosis(f"{app} has barely logged anything yet; it may have just started.")
    return Diagnosis(f"{app} looks healthy; its logs show no obvious problems.")
