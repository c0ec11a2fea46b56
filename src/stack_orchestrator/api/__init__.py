"""
stack_orchestrator.api

HTTP API package for the Stack Deployment Orchestrator.

Responsibilities:
- FastAPI app factory and router modules.
- API-layer dependency wiring, request models and error mapping.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# The API layer stays thin: validation, auth, delegation to `StackOrchestrator`.
