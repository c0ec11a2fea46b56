"""
stack_orchestrator.catalog

Catalog package.

Responsibilities:
- Resolve recipe identifiers into immutable `Recipe` values.
- Render recipe manifest templates for a concrete service node.
- Seed the built-in recipes.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# Raw catalog storage lives in the `recipes` table; this package is its read surface
# plus the append-only publish path used by the agent.
