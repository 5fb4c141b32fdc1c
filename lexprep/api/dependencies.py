from __future__ import annotations

from fastapi import Request

from lexprep.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the app's service container."""
    return request.app.state.container
