from __future__ import annotations

from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from stack_orchestrator.db.models import RecipeRecord


class RecipeRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_slug(self, slug: str) -> RecipeRecord | None:
        stmt = select(RecipeRecord).where(RecipeRecord.slug == slug)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def search(
        self, *, query: str | None = None, category: str | None = None, limit: int = 50
    ) -> list[RecipeRecord]:
        stmt = select(RecipeRecord)
        if category:
            stmt = stmt.where(RecipeRecord.category == category)
        if query:
            pattern = f"%{query.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(RecipeRecord.slug).like(pattern),
                    func.lower(RecipeRecord.display_name).like(pattern),
                    func.lower(RecipeRecord.description).like(pattern),
                    func.lower(RecipeRecord.category).like(pattern),
                )
            )
        stmt = stmt.order_by(RecipeRecord.display_name).limit(limit)
        return list((await self._session.execute(stmt)).scalars().all())

    async def create(
        self,
        *,
        slug: str,
        display_name: str,
        category: str,
        description: str,
        manifest_template: list[dict[str, Any]],
        dependencies: list[str],
        default_config: dict[str, Any],
        secret_keys: list[str],
        tags: list[str],
        source: str,
        created_by: str | None = None,
    ) -> RecipeRecord:
        rec = RecipeRecord(
            slug=slug,
            display_name=display_name,
            category=category,
            description=description,
            manifest_template=manifest_template,
            dependencies=dependencies,
            default_config=default_config,
            secret_keys=secret_keys,
            tags=tags,
            version=1,
            source=source,
            created_by=created_by,
        )
        self._session.add(rec)
        await self._session.flush()
        return rec
