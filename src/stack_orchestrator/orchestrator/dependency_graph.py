"""
stack_orchestrator.orchestrator.dependency_graph

Dependency Graph Builder.

Responsibilities:
- Expand a root recipe plus its transitive dependencies into a DAG.
- Deduplicate by recipe identifier (a shared dependency appears once).
- Reject any cycle with `CycleDetected` naming the chain; never return a partial graph.
- Emit nodes in topological order (dependencies first, declared order for ties).
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Protocol

from stack_orchestrator.catalog.models import Recipe
from stack_orchestrator.errors import CycleDetected


class RecipeSource(Protocol):
    async def resolve(self, recipe_id: str) -> Recipe: ...


@dataclass(frozen=True, slots=True)
class DependencyGraph:
    root: str
    # Topological order: every dependency precedes its dependents.
    nodes: tuple[Recipe, ...]
    # (dependent, dependency) pairs.
    edges: tuple[tuple[str, str], ...]

    @property
    def order(self) -> list[str]:
        return [r.slug for r in self.nodes]

    def dependencies_of(self, slug: str) -> list[str]:
        return [to for frm, to in self.edges if frm == slug]

    def dependents_of(self, slug: str) -> list[str]:
        return [frm for frm, to in self.edges if to == slug]


async def build_dependency_graph(source: RecipeSource, root_recipe_id: str) -> DependencyGraph:
    """
    Breadth-first expansion, then a depth-first pass for ordering.

    The BFS carries each node's visitation path so a recipe that reaches itself fails
    fast. Cycles that only close through already-visited recipes are invisible to a
    single path; the DFS pass over the resolved set catches those.
    """

    recipes: dict[str, Recipe] = {}
    queue: deque[tuple[str, tuple[str, ...]]] = deque([(root_recipe_id, ())])

    while queue:
        slug, path = queue.popleft()
        if slug in recipes:
            continue
        recipe = await source.resolve(slug)
        recipes[slug] = recipe
        here = (*path, slug)
        for dep in recipe.dependencies:
            if dep in here:
                raise CycleDetected([*here[here.index(dep) :], dep])
            if dep not in recipes:
                queue.append((dep, here))

    order = _topological_order(root_recipe_id, recipes)

    edges: list[tuple[str, str]] = []
    seen: set[tuple[str, str]] = set()
    for slug in order:
        for dep in recipes[slug].dependencies:
            if (slug, dep) not in seen:
                seen.add((slug, dep))
                edges.append((slug, dep))

    return DependencyGraph(
        root=root_recipe_id,
        nodes=tuple(recipes[s] for s in order),
        edges=tuple(edges),
    )


def _topological_order(root: str, recipes: dict[str, Recipe]) -> list[str]:
    # Iterative DFS post-order; "active" is the current path (grey set).
    order: list[str] = []
    done: set[str] = set()
    active: list[str] = []
    on_path: set[str] = set()
    stack: list[tuple[str, int]] = [(root, 0)]

    while stack:
        slug, idx = stack.pop()
        if idx == 0:
            if slug in done:
                continue
            active.append(slug)
            on_path.add(slug)
        deps = recipes[slug].dependencies
        if idx < len(deps):
            stack.append((slug, idx + 1))
            dep = deps[idx]
            if dep in on_path:
                raise CycleDetected([*active[active.index(dep) :], dep])
            if dep not in done:
                stack.append((dep, 0))
            continue
        active.pop()
        on_path.discard(slug)
        done.add(slug)
        order.append(slug)

    return order


# --- Module Notes -----------------------------------------------------------
# RecipeNotFound / CatalogUnavailable from the source propagate unchanged; the
# caller decides what is retried.
