"""
stack_orchestrator.agent.router

Agent Tool Router.

Responsibilities:
- Validate raw tool calls into the closed `ToolCall` union and dispatch them with an
  exhaustive `match`.
- Enforce the confirmation gate: a destructive call is parked as a Pending Action and
  only runs after `confirm_action(action_id, confirm=True)` from the same tenant.
- Fall back to an external chart search when a deploy names a recipe the catalog
  does not have, and offer `create_catalog_entry`.
- Relay every outcome (including failures) in plain language.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any, assert_never

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stack_orchestrator.agent.chart_search import ChartSearchClient
from stack_orchestrator.agent.narration import describe_stack, diagnose_logs, status_label
from stack_orchestrator.agent.tools import (
    CatalogEntryOutput,
    CatalogSearchOutput,
    ConfirmAction,
    ConnectionOutput,
    ConfirmOutput,
    CreateCatalogEntry,
    DeployOutput,
    DeployStack,
    GetConnectionInfo,
    GetLogs,
    GetStatus,
    LogsOutput,
    RecipeSummary,
    RemoveService,
    RestartService,
    SearchCatalog,
    ServiceStatus,
    StackStatus,
    StatusOutput,
    ToolCall,
    ToolResult,
    UpdateService,
    parse_tool_call,
    requires_confirmation,
)
from stack_orchestrator.auth.models import RequestContext
from stack_orchestrator.catalog.seed import web_app_recipe
from stack_orchestrator.db.models import PendingActionStatus, utcnow
from stack_orchestrator.db.repositories.audit import AuditRepo
from stack_orchestrator.db.repositories.pending_actions import PendingActionRepo
from stack_orchestrator.db.repositories.stacks import StackRepo
from stack_orchestrator.db.session import session_scope
from stack_orchestrator.errors import (
    ActionNotFound,
    ChartSearchUnavailable,
    ClusterUnavailable,
    ConfirmationRequired,
    CycleDetected,
    DeployConflict,
    Forbidden,
    OrchestratorError,
    RecipeNotFound,
    ServiceNotFound,
    StackNotFound,
)
from stack_orchestrator.observability.logging import get_logger
from stack_orchestrator.orchestrator.snapshot import StackSnapshot
from stack_orchestrator.services.stack_service import StackOrchestrator
from stack_orchestrator.settings import Settings

log = get_logger(__name__)


def stack_status(snap: StackSnapshot) -> StackStatus:
    return StackStatus(
        stack_id=str(snap.id),
        root_recipe_id=snap.root_recipe_id,
        status=snap.status,
        transitional=snap.transitional,
        services=[
            ServiceStatus(
                node_id=str(n.id),
                recipe_id=n.recipe_id,
                status=n.status.value,
                label=status_label(n.status),
                error=n.error,
            )
            for n in snap.nodes
        ],
    )


def plain_error(e: OrchestratorError) -> str:
    match e:
        case DeployConflict():
            return "Another change to this app is still in progress. Try again once it finishes."
        case StackNotFound():
            return "I couldn't find that app among your installed apps."
        case ServiceNotFound():
            return "I couldn't find that service among your installed apps."
        case CycleDetected():
            return (
                "This app's dependencies loop back on themselves ("
                + " -> ".join(e.chain)
                + "), so it can't be installed."
            )
        case ClusterUnavailable():
            return f"The cluster isn't answering right now ({e.message}). Try again in a moment."
        case Forbidden():
            return "Your role can view apps but not change them."
        case ActionNotFound():
            return "That confirmation request doesn't exist or has already been handled."
        case _:
            return e.message


class AgentToolRouter:
    def __init__(
        self,
        *,
        orchestrator: StackOrchestrator,
        session_factory: async_sessionmaker[AsyncSession],
        chart_search: ChartSearchClient,
        settings: Settings,
    ) -> None:
        self._orch = orchestrator
        self._session_factory = session_factory
        self._chart_search = chart_search
        self._settings = settings

    async def call(self, ctx: RequestContext, raw: dict[str, Any]) -> ToolResult:
        """Entry point for untyped payloads (HTTP, LLM tool calls)."""

        try:
            call = parse_tool_call(raw)
        except ValidationError as e:
            tool = str(raw.get("tool", "unknown"))
            log.info("agent.tool.invalid", tool=tool, errors=e.error_count())
            return ToolResult(
                tool=tool,
                status="error",
                message="That request doesn't match any tool or has invalid arguments.",
                data={"errors": e.errors(include_url=False, include_context=False)},
                error_code="INVALID_ARGUMENTS",
            )
        return await self.dispatch(ctx, call)

    async def dispatch(self, ctx: RequestContext, call: ToolCall) -> ToolResult:
        log.info("agent.tool.called", tool=call.tool, tenant_id=ctx.tenant_id, user_id=ctx.user_id)
        try:
            if requires_confirmation(call):
                await self._park(ctx, call)
            return await self._execute(ctx, call)
        except ConfirmationRequired as cr:
            return ToolResult(
                tool=call.tool,
                status="confirmation_required",
                message=cr.summary,
                data=cr.payload,
                action_id=cr.action_id,
            )
        except OrchestratorError as e:
            log.info("agent.tool.failed", tool=call.tool, code=e.code, error=e.message)
            return ToolResult(
                tool=call.tool, status="error", message=plain_error(e), error_code=e.code
            )

    # --- execution ---------------------------------------------------------

    async def _execute(self, ctx: RequestContext, call: ToolCall) -> ToolResult:
        match call:
            case SearchCatalog():
                return await self._search_catalog(call)
            case DeployStack():
                return await self._deploy(ctx, call)
            case GetStatus():
                return await self._status(ctx, call)
            case GetLogs():
                return await self._logs(ctx, call)
            case UpdateService():
                snap = await self._orch.deployer.update_service(ctx, call.node_id, call.config)
                node = snap.node(uuid.UUID(call.node_id))
                name = node.recipe_id if node is not None else "The service"
                return ToolResult(
                    tool=call.tool,
                    status="ok",
                    message=f"Updating {name}. I'll report back once it has settled.",
                    data=StatusOutput(stacks=[stack_status(snap)]).model_dump(mode="json"),
                )
            case RestartService():
                snap = await self._orch.deployer.restart_service(ctx, call.node_id)
                node = snap.node(uuid.UUID(call.node_id))
                name = node.recipe_id if node is not None else "The service"
                return ToolResult(
                    tool=call.tool,
                    status="ok",
                    message=f"Restarting {name}. It will be back once its new pods are ready.",
                    data=StatusOutput(stacks=[stack_status(snap)]).model_dump(mode="json"),
                )
            case GetConnectionInfo():
                return await self._connection(ctx, call)
            case RemoveService():
                snap = await self._orch.deployer.remove_stack(ctx, call.stack_id)
                return ToolResult(
                    tool=call.tool,
                    status="ok",
                    message=f"Removing {snap.root_recipe_id} and the services it brought along.",
                    data=StatusOutput(stacks=[stack_status(snap)]).model_dump(mode="json"),
                )
            case CreateCatalogEntry():
                return await self._create_entry(ctx, call)
            case ConfirmAction():
                return await self._confirm(ctx, call)
            case _:
                assert_never(call)

    async def _search_catalog(self, call: SearchCatalog) -> ToolResult:
        recipes = await self._orch.catalog.search(
            query=call.query, category=call.category, limit=call.limit
        )
        out = CatalogSearchOutput(
            recipes=[
                RecipeSummary(
                    slug=r.slug,
                    display_name=r.display_name,
                    category=r.category,
                    description=r.description,
                    dependencies=list(r.dependencies),
                )
                for r in recipes
            ]
        )
        if recipes:
            message = "I found: " + ", ".join(r.display_name for r in recipes) + "."
        else:
            message = "Nothing in the catalog matches that."
        return ToolResult(tool=call.tool, status="ok", message=message, data=out.model_dump(mode="json"))

    async def _deploy(self, ctx: RequestContext, call: DeployStack) -> ToolResult:
        try:
            snap = await self._orch.deployer.deploy_stack(ctx, call.recipe_id, call.config)
        except RecipeNotFound as e:
            return await self._offer_charts(call, e.recipe_id)
        return ToolResult(
            tool=call.tool,
            status="ok",
            message=(
                f"Installing {snap.root_recipe_id} with {len(snap.nodes)} service(s). "
                "Dependencies start first; I'll let you know when everything is running."
            ),
            data=DeployOutput(stack=stack_status(snap)).model_dump(mode="json"),
        )

    async def _offer_charts(self, call: DeployStack, missing: str) -> ToolResult:
        try:
            suggestions = await self._chart_search.search(missing)
        except ChartSearchUnavailable:
            return ToolResult(
                tool=call.tool,
                status="error",
                message=(
                    f"{missing} isn't in the catalog, and I couldn't reach the public chart "
                    "index to look for it."
                ),
                error_code=RecipeNotFound.code,
            )
        if not suggestions:
            return ToolResult(
                tool=call.tool,
                status="error",
                message=f"{missing} isn't in the catalog and I found no public package by that name.",
                error_code=RecipeNotFound.code,
            )
        names = ", ".join(s.display_name for s in suggestions)
        log.info("agent.tool.chart_fallback", recipe_id=missing, suggestions=len(suggestions))
        return ToolResult(
            tool=call.tool,
            status="ok",
            message=(
                f"{missing} isn't in the catalog yet. Similar public packages: {names}. "
                "I can add one to the catalog with create_catalog_entry, then install it."
            ),
            data=DeployOutput(suggestions=suggestions, offer="create_catalog_entry").model_dump(
                mode="json"
            ),
        )

    async def _status(self, ctx: RequestContext, call: GetStatus) -> ToolResult:
        if call.stack_id is not None:
            snaps = [await self._orch.get_stack(ctx, call.stack_id)]
        else:
            snaps = await self._orch.list_stacks(ctx)
        if snaps:
            message = " ".join(describe_stack(s) for s in snaps)
        else:
            message = "You don't have any apps installed yet."
        return ToolResult(
            tool=call.tool,
            status="ok",
            message=message,
            data=StatusOutput(stacks=[stack_status(s) for s in snaps]).model_dump(mode="json"),
        )

    async def _logs(self, ctx: RequestContext, call: GetLogs) -> ToolResult:
        node, text = await self._orch.get_logs(ctx, call.node_id, tail_lines=call.tail_lines)
        pods = node.observed_state.get("pods") or []
        restarts = sum(int(p.get("restarts") or 0) for p in pods if isinstance(p, dict))
        diagnosis = diagnose_logs(node.recipe_id, text, restarts=restarts)
        out = LogsOutput(
            node_id=str(node.id),
            recipe_id=node.recipe_id,
            lines=text.splitlines(),
            diagnosis=diagnosis.diagnosis,
            suggestion=diagnosis.suggestion,
        )
        message = diagnosis.diagnosis
        if diagnosis.suggestion:
            message += f" Suggested next step: {diagnosis.suggestion}"
        return ToolResult(tool=call.tool, status="ok", message=message, data=out.model_dump(mode="json"))

    async def _connection(self, ctx: RequestContext, call: GetConnectionInfo) -> ToolResult:
        info = await self._orch.connection_info(ctx, call.node_id)
        out = ConnectionOutput(
            node_id=info["node_id"],
            recipe_id=info["recipe_id"],
            host=info["host"],
            port=info["port"],
            secrets=info.get("secrets"),
        )
        address = f"{out.host}:{out.port}" if out.port else out.host
        message = f"{out.recipe_id} is reachable inside the cluster at {address}."
        if out.secrets:
            message += " Its credentials are included: " + ", ".join(sorted(out.secrets)) + "."
        return ToolResult(tool=call.tool, status="ok", message=message, data=out.model_dump(mode="json"))

    async def _create_entry(self, ctx: RequestContext, call: CreateCatalogEntry) -> ToolResult:
        if not ctx.can_mutate:
            raise Forbidden(f"Role '{ctx.role}' cannot publish catalog entries")
        template, defaults = web_app_recipe(container=call.slug, image=call.image, port=call.port)
        description = call.description
        if call.chart_url:
            description = f"{description}\n\nSource: {call.chart_url}".strip()
        recipe = await self._orch.catalog.create_entry(
            slug=call.slug,
            display_name=call.display_name,
            category=call.category,
            description=description,
            manifest_template=template,
            dependencies=call.dependencies,
            default_config=defaults,
            tags=call.tags,
            source="agent",
            created_by=ctx.user_id,
        )
        return ToolResult(
            tool=call.tool,
            status="ok",
            message=f"{recipe.display_name} is now in the catalog and can be installed.",
            data=CatalogEntryOutput(slug=recipe.slug, display_name=recipe.display_name).model_dump(
                mode="json"
            ),
        )

    # --- confirmation gate -------------------------------------------------

    async def _park(self, ctx: RequestContext, call: ToolCall) -> None:
        """
        Persist the call as a Pending Action and raise `ConfirmationRequired`. Returns
        only when there is nothing to gate (a deploy of a recipe the catalog lacks).
        """

        if not ctx.can_mutate:
            raise Forbidden(f"Role '{ctx.role}' cannot change stacks")

        match call:
            case RemoveService():
                snap = await self._orch.reconciler.snapshot(
                    self._orch.parse_stack_id(call.stack_id), tenant_id=ctx.tenant_id
                )
                stack_id = snap.id
                summary = (
                    f"Remove {snap.root_recipe_id} and its {len(snap.nodes)} service(s)? "
                    "Any data stored in them will be lost."
                )
            case UpdateService():
                snap, node = await self._orch.find_service(ctx, call.node_id)
                stack_id = snap.id
                summary = (
                    f"Stop {node.recipe_id} in {snap.root_recipe_id} by scaling it to 0 replicas? "
                    "It will be unavailable until scaled back up."
                )
            case DeployStack():
                try:
                    recipe = await self._orch.catalog.resolve(call.recipe_id)
                except RecipeNotFound:
                    # Nothing to stop; `_deploy` offers public charts instead.
                    return
                async with session_scope(self._session_factory) as session:
                    existing = await StackRepo(session).active_for_root(
                        tenant_id=ctx.tenant_id, root_recipe_id=recipe.slug
                    )
                    stack_id = None if existing is None else existing.id
                if stack_id is None:
                    summary = (
                        f"Install {recipe.display_name} with 0 replicas? "
                        "It will not run until scaled up."
                    )
                else:
                    summary = (
                        f"Stop {recipe.display_name} by redeploying it with 0 replicas? "
                        "It will be unavailable until scaled back up."
                    )
            case _:
                raise AssertionError(f"{call.tool} is not gated")

        arguments = call.model_dump(mode="json")
        async with session_scope(self._session_factory) as session:
            action = await PendingActionRepo(session).create(
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                tool=call.tool,
                arguments=arguments,
                summary=summary,
                expires_at=utcnow() + timedelta(seconds=self._settings.confirmation_ttl_seconds),
            )
            await AuditRepo(session).add(
                tenant_id=ctx.tenant_id,
                stack_id=stack_id,
                actor=ctx.user_id,
                event_type="AGENT_ACTION_PARKED",
                details={"action_id": str(action.id), "tool": call.tool, "arguments": arguments},
            )
            action_id = str(action.id)

        log.info("agent.tool.parked", tool=call.tool, action_id=action_id, stack_id=str(stack_id))
        raise ConfirmationRequired(
            action_id,
            summary,
            {
                "action_id": action_id,
                "tool": call.tool,
                "arguments": arguments,
                "expires_in_seconds": self._settings.confirmation_ttl_seconds,
            },
        )

    async def _confirm(self, ctx: RequestContext, call: ConfirmAction) -> ToolResult:
        try:
            action_id = uuid.UUID(call.action_id)
        except ValueError:
            raise ActionNotFound(call.action_id) from None

        async with session_scope(self._session_factory) as session:
            repo = PendingActionRepo(session)
            action = await repo.get(action_id)
            # Another tenant's action is reported as missing.
            if action is None or action.tenant_id != ctx.tenant_id:
                raise ActionNotFound(call.action_id)
            if action.status != PendingActionStatus.pending:
                raise ActionNotFound(call.action_id)

            if utcnow() > action.expires_at:
                outcome = PendingActionStatus.expired
            elif call.confirm:
                outcome = PendingActionStatus.confirmed
            else:
                outcome = PendingActionStatus.rejected
            if not await repo.resolve(action_id, status=outcome):
                # A concurrent confirm/decline of the same action won.
                raise ActionNotFound(call.action_id)
            await AuditRepo(session).add(
                tenant_id=ctx.tenant_id,
                actor=ctx.user_id,
                event_type=f"AGENT_ACTION_{outcome.value}",
                details={"action_id": call.action_id, "tool": action.tool},
            )
            stored = dict(action.arguments)
            tool = action.tool

        log.info("agent.tool.resolved", action_id=call.action_id, tool=tool, outcome=outcome.value)
        if outcome == PendingActionStatus.expired:
            return ToolResult(
                tool=call.tool,
                status="declined",
                message="That confirmation expired, so nothing was changed. Ask again if you still want it.",
                data=ConfirmOutput(action_id=call.action_id, executed=False).model_dump(mode="json"),
                action_id=call.action_id,
            )
        if outcome == PendingActionStatus.rejected:
            return ToolResult(
                tool=call.tool,
                status="declined",
                message="Okay, I left everything as it is.",
                data=ConfirmOutput(action_id=call.action_id, executed=False).model_dump(mode="json"),
                action_id=call.action_id,
            )

        # Stored arguments already passed validation when the action was parked.
        inner = parse_tool_call(stored)
        try:
            result = await self._execute(ctx, inner)
        except OrchestratorError as e:
            log.info("agent.tool.failed", tool=inner.tool, code=e.code, error=e.message)
            result = ToolResult(
                tool=inner.tool, status="error", message=plain_error(e), error_code=e.code
            )
        return ToolResult(
            tool=call.tool,
            status=result.status,
            message=result.message,
            data=ConfirmOutput(
                action_id=call.action_id,
                executed=result.status == "ok",
                result=result.model_dump(mode="json"),
            ).model_dump(mode="json"),
            action_id=call.action_id,
            error_code=result.error_code,
        )


# --- Module Notes -----------------------------------------------------------
# The gate runs before `_execute`; confirmed actions go straight to `_execute`, so a
# stored call can never park itself a second time.
