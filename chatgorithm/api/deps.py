"""Request-scoped access to the services built at startup."""

from __future__ import annotations

from fastapi import HTTPException, Request


def get_service(request: Request, name: str):
    """Retrieve a service built during the FastAPI lifespan (see ``server.py``)."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail="The server is still starting up. Please try again in a moment.",
        )
    return service
