"""
stack_orchestrator.db.models

Core persistence schema for the orchestrator.

Responsibilities:
- Define ORM models:
  - RecipeRecord: published catalog entry
  - Stack: one tenant's instantiation of a recipe plus its dependencies
  - ServiceNode: one deployed service within a stack (lifecycle status lives here)
  - StackEdge: dependency ordering between two nodes of the same stack
  - PendingAction: destructive agent tool call waiting for confirmation
  - AuditEvent: append-only audit trail
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Enum, ForeignKey, Index, Integer, String, Text, Uuid as SAUuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stack_orchestrator.db.base import Base


def utcnow() -> datetime:
    # Naive UTC timestamps; SQLite has no timezone-aware column type.
    return datetime.now(UTC).replace(tzinfo=None)


class NodeStatus(enum.StrEnum):
    pending = "PENDING"
    deploying = "DEPLOYING"
    running = "RUNNING"
    failed = "FAILED"
    deleting = "DELETING"
    deleted = "DELETED"


class StackTarget(enum.StrEnum):
    active = "ACTIVE"
    deleted = "DELETED"


class PendingActionStatus(enum.StrEnum):
    pending = "PENDING"
    confirmed = "CONFIRMED"
    rejected = "REJECTED"
    expired = "EXPIRED"


class RecipeRecord(Base):
    __tablename__ = "recipes"

    id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    slug: Mapped[str] = mapped_column(String(63), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    manifest_template: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    dependencies: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    default_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    secret_keys: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    version: Mapped[int] = mapped_column(nullable=False, default=1)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="builtin")
    created_by: Mapped[str | None] = mapped_column(String(256), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)


class Stack(Base):
    __tablename__ = "stacks"

    id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    root_recipe_id: Mapped[str] = mapped_column(String(63), nullable=False)
    created_by: Mapped[str] = mapped_column(String(256), nullable=False)

    # Bumped by every structural request; stale work compares against it.
    generation: Mapped[int] = mapped_column(nullable=False, default=1)
    target: Mapped[StackTarget] = mapped_column(
        Enum(StackTarget), nullable=False, default=StackTarget.active, index=True
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    nodes: Mapped[list[ServiceNode]] = relationship(
        back_populates="stack", cascade="all, delete-orphan", order_by="ServiceNode.position"
    )
    edges: Mapped[list[StackEdge]] = relationship(
        back_populates="stack", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_stacks_tenant_root", "tenant_id", "root_recipe_id", "target"),)


class ServiceNode(Base):
    __tablename__ = "service_nodes"

    id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    stack_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("stacks.id"), nullable=False, index=True
    )
    recipe_id: Mapped[str] = mapped_column(String(63), nullable=False)
    # Topological index within the stack (dependencies first).
    position: Mapped[int] = mapped_column(nullable=False)

    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    config_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[NodeStatus] = mapped_column(Enum(NodeStatus), nullable=False, index=True)
    generation: Mapped[int] = mapped_column(nullable=False, default=1)
    status_changed_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    observed_state: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    observe_failures: Mapped[int] = mapped_column(nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    stack: Mapped[Stack] = relationship(back_populates="nodes")


class StackEdge(Base):
    __tablename__ = "stack_edges"

    id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    stack_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("stacks.id"), nullable=False, index=True
    )
    # `from_node_id` depends on `to_node_id`.
    from_node_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("service_nodes.id"), nullable=False
    )
    to_node_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("service_nodes.id"), nullable=False
    )

    stack: Mapped[Stack] = relationship(back_populates="edges")


class PendingAction(Base):
    __tablename__ = "pending_actions"

    id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(256), nullable=False)
    tool: Mapped[str] = mapped_column(String(64), nullable=False)
    arguments: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[PendingActionStatus] = mapped_column(
        Enum(PendingActionStatus), nullable=False, default=PendingActionStatus.pending
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Integer key gives a total order even when timestamps collide.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    stack_id: Mapped[uuid.UUID | None] = mapped_column(
        SAUuid(as_uuid=True), nullable=True, index=True
    )
    node_id: Mapped[uuid.UUID | None] = mapped_column(SAUuid(as_uuid=True), nullable=True)

    actor: Mapped[str] = mapped_column(String(256), nullable=False)  # user id / agent / system
    event_type: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)


# --- Module Notes -----------------------------------------------------------
# JSON columns hold manifest templates and configs verbatim; the service layer owns
# their validation. Aggregate stack status is derived from node rows, never stored.
