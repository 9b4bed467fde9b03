"""FastAPI server adapter for the work orchestrator.

Design intent:
- Keep business logic in `work_orchestrator.orchestrator.*`
- Keep server-specific concerns (routing, CORS, worker pool) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from work_orchestrator.server.app import create_app
