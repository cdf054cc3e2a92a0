"""Server information API routes."""

from typing import Any

from fastapi import APIRouter, Request

from reelvault import __version__
from reelvault.common.models import ServerInfo
from reelvault.server.services.container import Services


def create_info_router(services: Services) -> APIRouter:
    """Create server info router.

    Limits are read from ``request.app.state.settings`` at request time so
    hot-reloaded config takes effect immediately.

    Args:
        services: Service container (usually a lazy proxy)

    Returns:
        FastAPI router
    """
    router = APIRouter(prefix="/api", tags=["Server Info"])

    @router.get("/info", response_model=ServerInfo)
    async def get_server_info(request: Request) -> ServerInfo:
        """Get server capabilities and upload limits."""
        settings = request.app.state.settings
        return ServerInfo(
            version=__version__,
            state_backend=services.state.backend_type.value,
            object_store=services.store.name,
            max_upload_bytes=settings.max_upload_bytes,
            allowed_extensions=list(settings.allowed_extensions),
            part_url_ttl=settings.part_url_ttl,
        )

    @router.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        state_ok = await services.state.ping()
        return {
            "status": "healthy" if state_ok else "degraded",
            "version": __version__,
            "state": "ok" if state_ok else "unreachable",
        }

    return router
