"""Admin API routes: config management, quotas and maintenance."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from reelvault.common.constants import AUTH_HEADER
from reelvault.common.models import ReconcileReport
from reelvault.server.config import HOT_RELOADABLE_FIELDS, ServerSettings, reload_hot_settings
from reelvault.server.quota.models import normalize_user_id
from reelvault.server.services.container import Services

logger = logging.getLogger("reelvault.server")


class SetQuotaRequest(BaseModel):
    quota_bytes: int = Field(..., ge=0)


def _safe_repr(value: Any) -> str:
    """Produce a safe string repr for change diffs (truncate long values)."""
    s = repr(value)
    return s[:200] + "..." if len(s) > 200 else s


def _require_admin_access(request: Request) -> None:
    """Check that the request has admin-level access.

    With ``admin_tokens`` configured only those are accepted; otherwise any
    API token is.
    """
    settings: ServerSettings = request.app.state.settings
    allowed = settings.admin_tokens or settings.auth_tokens

    api_token = request.headers.get(AUTH_HEADER, "")
    if api_token and api_token in allowed:
        return

    raise HTTPException(403, "Admin access required")


def create_admin_router(services: Services, propagate_fn: Any) -> APIRouter:
    """Create admin router.

    Args:
        services: Service container (usually a lazy proxy)
        propagate_fn: Callable ``(app, settings, changes) -> None`` to apply hot-reloaded changes.

    Returns:
        FastAPI router with admin endpoints.
    """
    router = APIRouter(prefix="/api/admin", tags=["Admin"])

    @router.post("/reload-config")
    async def reload_config(request: Request) -> dict[str, Any]:
        """Reload hot-reloadable config fields from the config file.

        Returns a diff of changed fields and lists which fields are
        hot-reloadable vs require a restart.
        """
        _require_admin_access(request)

        settings: ServerSettings = request.app.state.settings
        changes = reload_hot_settings(settings)
        if changes:
            propagate_fn(request.app, settings, changes)
            from reelvault.server.background import _get_config_mtime

            request.app.state.config_mtime = _get_config_mtime(settings)
            change_summary = {k: {"old": _safe_repr(old), "new": _safe_repr(new)} for k, (old, new) in changes.items()}
            logger.info(
                "Hot-reloaded %d field(s): %s",
                len(changes),
                ", ".join(changes.keys()),
            )
        else:
            change_summary = {}

        return {
            "reloaded": bool(changes),
            "changes": change_summary,
            "hot_reloadable": sorted(HOT_RELOADABLE_FIELDS),
            "requires_restart": [
                "host",
                "port",
                "workers",
                "state_backend",
                "state_path",
                "redis_url",
                "object_store",
                "storage_path",
                "bucket",
                "thumbnail_bucket",
                "s3_*",
            ],
            "note": (
                "Quota changes apply to profiles created afterwards; use "
                "PUT /api/admin/users/{user_id}/quota for existing users."
            ),
        }

    @router.get("/config-status")
    async def config_status(request: Request) -> dict[str, Any]:
        """Show which config file is loaded and watch status."""
        _require_admin_access(request)

        settings: ServerSettings = request.app.state.settings
        config_path = getattr(settings, "_config_path", None)
        return {
            "config_file": str(config_path.resolve()) if config_path else None,
            "config_watch": settings.config_watch,
            "config_watch_interval": settings.config_watch_interval,
        }

    @router.post("/reconcile", response_model=ReconcileReport)
    async def reconcile(
        request: Request,
        user_id: Optional[str] = Query(None, description="Only recompute this user's ledger"),
    ) -> ReconcileReport:
        """Run a reconciler pass now.

        With ``user_id`` only that user's ledger is recomputed; without it
        the full pass runs (expired reservations, orphans, ledgers, stuck
        deletions).
        """
        _require_admin_access(request)
        if user_id:
            corrections = await services.reconciler.reconcile_ledger(normalize_user_id(user_id))
            return ReconcileReport(ledger_corrections=corrections)
        return await services.reconciler.run()

    @router.get("/users/{user_id}/quota")
    async def get_user_quota(user_id: str, request: Request) -> dict[str, Any]:
        _require_admin_access(request)
        profile = await services.ledger.get_profile(normalize_user_id(user_id))
        if profile is None:
            raise HTTPException(404, "User has no quota profile")
        return profile.to_state_dict()

    @router.put("/users/{user_id}/quota")
    async def set_user_quota(user_id: str, body: SetQuotaRequest, request: Request) -> dict[str, Any]:
        """Change one user's quota. Usage above the new quota is kept."""
        _require_admin_access(request)
        profile = await services.ledger.set_quota(normalize_user_id(user_id), body.quota_bytes)
        logger.info("Quota of %s set to %d bytes", profile.user_id, profile.quota_bytes)
        return profile.to_state_dict()

    @router.get("/dead-letters")
    async def dead_letters(request: Request) -> dict[str, Any]:
        """Deletion jobs that exhausted their deliveries."""
        _require_admin_access(request)
        letters = await services.queue.dead_letters()
        return {"count": len(letters), "jobs": letters}

    return router
