"""
stack_orchestrator.catalog.resolver

Catalog Resolver.

Responsibilities:
- `resolve(recipe_id)`: pure lookup of a published recipe.
- Reject syntactically invalid identifiers before touching storage.
- Keep "not in the catalog" (`RecipeNotFound`) distinct from "catalog storage is
  broken" (`CatalogUnavailable`); the deployer retries only the latter.
- Search and append-only publishing for the HTTP catalog and agent tools.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stack_orchestrator.catalog.models import Recipe, is_valid_recipe_id
from stack_orchestrator.db.repositories.recipes import RecipeRepo
from stack_orchestrator.db.session import session_scope
from stack_orchestrator.errors import (
    CatalogUnavailable,
    InvalidRecipeId,
    RecipeExists,
    RecipeNotFound,
)
from stack_orchestrator.observability.logging import get_logger

log = get_logger(__name__)


class CatalogResolver:
    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def resolve(self, recipe_id: str) -> Recipe:
        if not is_valid_recipe_id(recipe_id):
            raise InvalidRecipeId(recipe_id)
        try:
            async with session_scope(self._session_factory) as session:
                rec = await RecipeRepo(session).get_by_slug(recipe_id)
        except SQLAlchemyError as e:
            log.warning("catalog.unavailable", recipe_id=recipe_id, error=str(e))
            raise CatalogUnavailable(f"Catalog lookup for '{recipe_id}' failed") from e
        if rec is None:
            raise RecipeNotFound(recipe_id)
        return Recipe.from_record(rec)

    async def search(
        self, *, query: str | None = None, category: str | None = None, limit: int = 50
    ) -> list[Recipe]:
        try:
            async with session_scope(self._session_factory) as session:
                rows = await RecipeRepo(session).search(
                    query=query, category=category, limit=limit
                )
        except SQLAlchemyError as e:
            raise CatalogUnavailable("Catalog search failed") from e
        return [Recipe.from_record(r) for r in rows]

    async def create_entry(
        self,
        *,
        slug: str,
        display_name: str,
        category: str,
        description: str = "",
        manifest_template: list[dict[str, Any]] | None = None,
        dependencies: list[str] | None = None,
        default_config: dict[str, Any] | None = None,
        secret_keys: list[str] | None = None,
        tags: list[str] | None = None,
        source: str = "agent",
        created_by: str | None = None,
    ) -> Recipe:
        """
        Publish a new recipe. Published recipes are immutable: an existing slug is
        rejected, never overwritten.
        """

        if not is_valid_recipe_id(slug):
            raise InvalidRecipeId(slug)
        deps = list(dependencies or [])
        for dep in deps:
            if not is_valid_recipe_id(dep):
                raise InvalidRecipeId(dep)

        try:
            async with session_scope(self._session_factory) as session:
                repo = RecipeRepo(session)
                if await repo.get_by_slug(slug) is not None:
                    raise RecipeExists(slug)
                rec = await repo.create(
                    slug=slug,
                    display_name=display_name,
                    category=category,
                    description=description,
                    manifest_template=list(manifest_template or []),
                    dependencies=deps,
                    default_config=dict(default_config or {}),
                    secret_keys=list(secret_keys or []),
                    tags=list(tags or []),
                    source=source,
                    created_by=created_by,
                )
        except IntegrityError as e:
            # Lost a race against a concurrent publish of the same slug.
            raise RecipeExists(slug) from e
        except SQLAlchemyError as e:
            raise CatalogUnavailable(f"Publishing '{slug}' failed") from e

        log.info("catalog.entry_created", slug=slug, source=source)
        return Recipe.from_record(rec)


# --- Module Notes -----------------------------------------------------------
# Each call opens its own short session so the resolver is safe to share across
# concurrent rollouts and requests.
