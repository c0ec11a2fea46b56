"""
stack_orchestrator.catalog.models

Catalog value objects.

Responsibilities:
- Define the immutable `Recipe` handed to the graph builder and deployer.
- Convert persisted `RecipeRecord` rows into `Recipe` values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from stack_orchestrator.db.models import RecipeRecord

# DNS-label shaped: recipe slugs end up in Kubernetes resource names.
RECIPE_ID_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def is_valid_recipe_id(recipe_id: str) -> bool:
    return bool(recipe_id) and RECIPE_ID_PATTERN.fullmatch(recipe_id) is not None


@dataclass(frozen=True, slots=True)
class Recipe:
    slug: str
    display_name: str
    category: str
    description: str = ""
    manifest_template: tuple[dict[str, Any], ...] = ()
    dependencies: tuple[str, ...] = ()
    default_config: dict[str, Any] = field(default_factory=dict)
    secret_keys: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    version: int = 1
    source: str = "builtin"

    @classmethod
    def from_record(cls, rec: RecipeRecord) -> Recipe:
        return cls(
            slug=rec.slug,
            display_name=rec.display_name,
            category=rec.category,
            description=rec.description or "",
            manifest_template=tuple(rec.manifest_template or ()),
            dependencies=tuple(rec.dependencies or ()),
            default_config=dict(rec.default_config or {}),
            secret_keys=tuple(rec.secret_keys or ()),
            tags=tuple(rec.tags or ()),
            version=rec.version,
            source=rec.source,
        )

    def summary(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "display_name": self.display_name,
            "category": self.category,
            "description": self.description,
            "dependencies": list(self.dependencies),
            "tags": list(self.tags),
            "version": self.version,
            "source": self.source,
        }

    def detail(self) -> dict[str, Any]:
        return {
            **self.summary(),
            "default_config": dict(self.default_config),
            "secret_keys": list(self.secret_keys),
            "manifest_template": [dict(r) for r in self.manifest_template],
        }


# --- Module Notes -----------------------------------------------------------
# `default_config` is a plain dict inside a frozen dataclass; callers copy it before
# merging user overrides.
