"""
stack_orchestrator.api.__main__

Entrypoint for running the API via `python -m stack_orchestrator.api`.

Responsibilities:
- Load settings.
- Create the app.
- Start uvicorn with structlog-compatible logging config.
"""

from __future__ import annotations

import uvicorn

from stack_orchestrator.api.app import create_app
from stack_orchestrator.settings import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        create_app(settings=settings),
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,  # structlog
    )


if __name__ == "__main__":
    main()


# --- Module Notes -----------------------------------------------------------
# Run a single worker: per-stack mutation locks and background rollouts live in
# this process.
