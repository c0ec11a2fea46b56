"""
stack_orchestrator.auth

Authentication/authorization package.

Responsibilities:
- JWT helpers and validation.
- FastAPI dependencies yielding the explicit `RequestContext`.
"""

# Package marker.
