"""
stack_orchestrator.agent.chart_search

External chart search (Artifact Hub).

Responsibilities:
- Look up public Helm charts when a requested app is missing from the catalog.
- Normalize results into `ChartSuggestion` values the agent can offer as new
  catalog entries.
"""

from __future__ import annotations

from typing import Any

import httpx

from stack_orchestrator.agent.tools import ChartSuggestion
from stack_orchestrator.errors import ChartSearchUnavailable
from stack_orchestrator.observability.logging import get_logger

log = get_logger(__name__)

# Artifact Hub repository kind for Helm charts.
_HELM_KIND = "0"


class ChartSearchClient:
    def __init__(self, *, base_url: str, http: httpx.AsyncClient, limit: int = 5) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http
        self._limit = limit

    async def search(self, query: str) -> list[ChartSuggestion]:
        try:
            r = await self._http.get(
                f"{self._base_url}/packages/search",
                params={
                    "ts_query_web": query,
                    "kind": _HELM_KIND,
                    "limit": str(self._limit),
                    "offset": "0",
                },
                headers={"Accept": "application/json"},
            )
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("chart_search.failed", query=query, error=str(e))
            raise ChartSearchUnavailable(f"Chart search for '{query}' failed") from e

        packages = body.get("packages") if isinstance(body, dict) else None
        return [_suggestion(p) for p in (packages or []) if isinstance(p, dict) and p.get("name")]


def _suggestion(pkg: dict[str, Any]) -> ChartSuggestion:
    repo = pkg.get("repository") or {}
    repo_name = repo.get("name")
    url = f"https://artifacthub.io/packages/helm/{repo_name}/{pkg['name']}" if repo_name else None
    return ChartSuggestion(
        name=str(pkg["name"]),
        display_name=str(pkg.get("display_name") or pkg["name"]),
        description=str(pkg.get("description") or ""),
        version=pkg.get("version"),
        app_version=pkg.get("app_version"),
        repository=repo_name,
        url=url,
    )


# --- Module Notes -----------------------------------------------------------
# Suggestions are never installed directly; the agent publishes one through
# `create_catalog_entry` first.
