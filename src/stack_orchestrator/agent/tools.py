"""
stack_orchestrator.agent.tools

Agent tool declarations.

Responsibilities:
- Model every tool call as a tagged Pydantic variant (discriminator: `tool`).
- Declare name, description, input/output JSON schema and the `destructive` flag
  for each tool.
- Decide which concrete calls must pass the confirmation gate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from stack_orchestrator.catalog.models import RECIPE_ID_PATTERN

_SLUG = RECIPE_ID_PATTERN.pattern


def sets_zero_replicas(config: dict[str, Any]) -> bool:
    """
    True when `config` would leave a service with no replicas: anything that truncates
    to zero (0, 0.0, "00", "0.5", False). A value that is not a finite number counts
    as zero too.
    """

    if "replicas" not in config or config["replicas"] is None:
        return False
    replicas = config["replicas"]
    if isinstance(replicas, bool):
        return not replicas
    try:
        return int(float(str(replicas).strip())) == 0
    except (ValueError, OverflowError):
        return True


class _ToolInput(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SearchCatalog(_ToolInput):
    tool: Literal["search_catalog"] = "search_catalog"
    query: str | None = Field(default=None, description="Free text, e.g. 'workflow automation'")
    category: str | None = None
    limit: int = Field(default=10, ge=1, le=50)


class DeployStack(_ToolInput):
    tool: Literal["deploy_stack"] = "deploy_stack"
    recipe_id: str = Field(description="Catalog slug of the app to install, e.g. 'n8n'")
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def scales_to_zero(self) -> bool:
        return sets_zero_replicas(self.config)


class GetStatus(_ToolInput):
    tool: Literal["get_status"] = "get_status"
    stack_id: str | None = Field(default=None, description="Omit to list every installed stack")


class GetLogs(_ToolInput):
    tool: Literal["get_logs"] = "get_logs"
    node_id: str
    tail_lines: int = Field(default=100, ge=1, le=1000)


class UpdateService(_ToolInput):
    tool: Literal["update_service"] = "update_service"
    node_id: str
    config: dict[str, Any] = Field(description="Settings to change; merged over the current ones")

    @property
    def scales_to_zero(self) -> bool:
        return sets_zero_replicas(self.config)


class RestartService(_ToolInput):
    tool: Literal["restart_service"] = "restart_service"
    node_id: str


class GetConnectionInfo(_ToolInput):
    tool: Literal["get_connection_info"] = "get_connection_info"
    node_id: str


class RemoveService(_ToolInput):
    tool: Literal["remove_service"] = "remove_service"
    stack_id: str


class CreateCatalogEntry(_ToolInput):
    tool: Literal["create_catalog_entry"] = "create_catalog_entry"
    slug: str = Field(pattern=_SLUG)
    display_name: str = Field(min_length=1, max_length=128)
    category: str = Field(min_length=1, max_length=64)
    description: str = ""
    image: str = Field(description="Container image, e.g. 'grafana/grafana:11.1.0'")
    port: int = Field(default=80, ge=1, le=65535)
    dependencies: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    chart_url: str | None = Field(default=None, description="Package page the entry was derived from")


class ConfirmAction(_ToolInput):
    tool: Literal["confirm_action"] = "confirm_action"
    action_id: str
    confirm: bool


ToolCall = Annotated[
    SearchCatalog
    | DeployStack
    | GetStatus
    | GetLogs
    | UpdateService
    | RestartService
    | GetConnectionInfo
    | RemoveService
    | CreateCatalogEntry
    | ConfirmAction,
    Field(discriminator="tool"),
]

TOOL_CALL_ADAPTER: TypeAdapter[ToolCall] = TypeAdapter(ToolCall)


def parse_tool_call(raw: dict[str, Any]) -> ToolCall:
    """Raises `pydantic.ValidationError` for unknown tools or bad arguments."""

    return TOOL_CALL_ADAPTER.validate_python(raw)


# --- outputs -----------------------------------------------------------------


class ServiceStatus(BaseModel):
    node_id: str
    recipe_id: str
    status: str
    label: str
    error: str | None = None


class StackStatus(BaseModel):
    stack_id: str
    root_recipe_id: str
    status: str
    transitional: bool
    services: list[ServiceStatus]


class RecipeSummary(BaseModel):
    slug: str
    display_name: str
    category: str
    description: str
    dependencies: list[str]


class ChartSuggestion(BaseModel):
    name: str
    display_name: str
    description: str
    version: str | None = None
    app_version: str | None = None
    repository: str | None = None
    url: str | None = None


class CatalogSearchOutput(BaseModel):
    recipes: list[RecipeSummary]


class DeployOutput(BaseModel):
    stack: StackStatus | None = None
    # Filled when the recipe is missing and external charts were found instead.
    suggestions: list[ChartSuggestion] = Field(default_factory=list)
    offer: Literal["create_catalog_entry"] | None = None


class StatusOutput(BaseModel):
    stacks: list[StackStatus]


class LogsOutput(BaseModel):
    node_id: str
    recipe_id: str
    lines: list[str]
    diagnosis: str
    suggestion: str | None = None


class ConnectionOutput(BaseModel):
    node_id: str
    recipe_id: str
    host: str
    port: str
    # Omitted for callers that may not change the stack.
    secrets: dict[str, str] | None = None


class CatalogEntryOutput(BaseModel):
    slug: str
    display_name: str


class ConfirmOutput(BaseModel):
    action_id: str
    executed: bool
    result: dict[str, Any] | None = None


class ToolResult(BaseModel):
    """
    Envelope returned for every call. `message` is what the agent relays to the user.
    """

    tool: str
    status: Literal["ok", "confirmation_required", "declined", "error"]
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    action_id: str | None = None
    error_code: str | None = None


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    destructive: bool

    def declaration(self) -> dict[str, Any]:
        input_schema = self.input_model.model_json_schema()
        # The discriminator is implied by the tool name.
        input_schema.get("properties", {}).pop("tool", None)
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": input_schema,
            "output_schema": self.output_model.model_json_schema(),
            "destructive": self.destructive,
        }


TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="search_catalog",
        description="Find apps in the catalog by keyword or category.",
        input_model=SearchCatalog,
        output_model=CatalogSearchOutput,
        destructive=False,
    ),
    ToolSpec(
        name="deploy_stack",
        description=(
            "Install an app and everything it depends on. If the app is not in the "
            "catalog, similar public charts are suggested instead. Redeploying an "
            "installed app updates it; setting replicas to 0 needs the user's confirmation."
        ),
        input_model=DeployStack,
        output_model=DeployOutput,
        destructive=False,
    ),
    ToolSpec(
        name="get_status",
        description="Show the state of installed apps and explain any failures.",
        input_model=GetStatus,
        output_model=StatusOutput,
        destructive=False,
    ),
    ToolSpec(
        name="get_logs",
        description="Read recent logs of one service and diagnose common problems.",
        input_model=GetLogs,
        output_model=LogsOutput,
        destructive=False,
    ),
    ToolSpec(
        name="update_service",
        description=(
            "Change settings of one service (image, replicas, resources). Setting "
            "replicas to 0 stops the service and needs the user's confirmation."
        ),
        input_model=UpdateService,
        output_model=StatusOutput,
        destructive=False,
    ),
    ToolSpec(
        name="restart_service",
        description=(
            "Restart one service with its current settings, e.g. after it got stuck. "
            "It is briefly unavailable while new pods start."
        ),
        input_model=RestartService,
        output_model=StatusOutput,
        destructive=False,
    ),
    ToolSpec(
        name="get_connection_info",
        description=(
            "Show the in-cluster host, port and credentials of a service such as a "
            "database, so the user can connect other tools to it."
        ),
        input_model=GetConnectionInfo,
        output_model=ConnectionOutput,
        destructive=False,
    ),
    ToolSpec(
        name="remove_service",
        description=(
            "Remove an installed app and its dependencies. Data stored in the app is "
            "lost. Always needs the user's confirmation."
        ),
        input_model=RemoveService,
        output_model=StatusOutput,
        destructive=True,
    ),
    ToolSpec(
        name="create_catalog_entry",
        description="Publish a new single-container app to the catalog.",
        input_model=CreateCatalogEntry,
        output_model=CatalogEntryOutput,
        destructive=False,
    ),
    ToolSpec(
        name="confirm_action",
        description="Approve or decline a pending destructive action by its id.",
        input_model=ConfirmAction,
        output_model=ConfirmOutput,
        destructive=False,
    ),
)

TOOLS_BY_NAME: dict[str, ToolSpec] = {spec.name: spec for spec in TOOL_SPECS}


def requires_confirmation(call: ToolCall) -> bool:
    if TOOLS_BY_NAME[call.tool].destructive:
        return True
    return isinstance(call, UpdateService | DeployStack) and call.scales_to_zero


def tool_declarations() -> list[dict[str, Any]]:
    return [spec.declaration() for spec in TOOL_SPECS]


# --- Module Notes -----------------------------------------------------------
# `update_service` and `deploy_stack` are declared non-destructive because only one
# shape of them (replicas set to 0) stops a running service; a redeploy with changed
# config updates the existing stack in place. `requires_confirmation` checks the call.
