"""FastAPI server adapter for the coordinator.

Design intent:
- Keep lifecycle rules in `hcp_coordinator.coordinator.*`
- Keep HTTP concerns (routing, CORS, error mapping, event streaming) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from hcp_coordinator.server.app import create_app
