"""FastAPI server main entry point."""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reelvault import __version__
from reelvault.server.admin import create_admin_router
from reelvault.server.background import _get_config_mtime, config_watch_loop, reservation_sweep_loop
from reelvault.server.config import ServerSettings, load_server_settings
from reelvault.server.errors import ReelVaultError
from reelvault.server.middleware.auth import TokenAuthMiddleware
from reelvault.server.objectstore.interface import ObjectStore
from reelvault.server.proxies import ServicesProxy
from reelvault.server.routes.info import create_info_router
from reelvault.server.routes.storage import create_storage_router
from reelvault.server.routes.uploads import create_uploads_router
from reelvault.server.routes.videos import create_videos_router
from reelvault.server.services.container import Services, build_services
from reelvault.server.services.state import BackendType, close_state_manager, get_state_manager

logger = logging.getLogger("reelvault.server")

# Global singletons, initialised by the lifespan handler.
_services: Optional[Services] = None
_tasks: list[asyncio.Task] = []


# ── Helpers ──────────────────────────────────────────────────


def _create_object_store(settings: ServerSettings) -> ObjectStore:
    """Build the object store selected by ``settings.object_store``."""
    if settings.object_store == "s3":
        from reelvault.server.objectstore.s3 import S3ObjectStore

        return S3ObjectStore(
            bucket=settings.bucket,
            thumbnail_bucket=settings.thumbnail_bucket,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
        )

    from reelvault.server.objectstore.local import LocalObjectStore

    secret = settings.signing_secret
    if not secret:
        secret = secrets.token_hex(32)
        logger.warning("No signing_secret configured; part URLs will not survive a restart")
    return LocalObjectStore(
        root=settings.storage_path,
        signing_secret=secret,
        public_url=settings.resolved_public_url(),
        bucket=settings.bucket,
        thumbnail_bucket=settings.thumbnail_bucket,
    )


def _propagate_hot_changes(
    app: FastAPI,
    settings: ServerSettings,
    changes: dict[str, tuple],
) -> None:
    """Push hot-reloaded settings into live runtime objects.

    Services read limits from the shared settings object, so only the
    auth middleware's token snapshot needs refreshing.
    """
    if "auth_tokens" in changes:
        logger.info("API tokens reloaded (%d active)", len(settings.auth_tokens))
    if "default_quota_bytes" in changes:
        logger.info(
            "Default quota is now %d bytes; existing profiles keep their quota",
            settings.default_quota_bytes,
        )


async def _reconcile_ledgers(services: Services) -> None:
    """Recompute ledger counters once at startup.

    Drift left by a crash between object deletion and ledger update, or by
    manual edits of the state store, is corrected before traffic arrives.
    """
    try:
        corrected = await services.reconciler.reconcile_ledger()
        if corrected:
            logger.info("Reconciled %d ledger(s) at startup", corrected)
        else:
            logger.info("Quota ledgers consistent, no corrections needed")
    except Exception:
        logger.exception("Failed to reconcile quota ledgers (non-fatal)")


# ── Application factory ─────────────────────────────────────


def create_app(settings: Optional[ServerSettings] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Server settings (None = load from env/config via auto-discovery)

    Returns:
        Configured FastAPI application
    """
    if settings is None:
        settings = load_server_settings()

    # ── Configure logging level ──────────────────────────────
    log_level = getattr(settings, "log_level", "INFO").upper()
    numeric_level = getattr(logging, log_level, logging.INFO)
    logging.getLogger("reelvault").setLevel(numeric_level)
    # Also set root handler if none configured
    if not logging.getLogger().handlers:
        logging.basicConfig(level=numeric_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    # ── Lifespan ─────────────────────────────────────────────

    async def startup(app: FastAPI) -> None:
        """Connect the state store and object store, start background loops."""
        global _services

        backend_type = BackendType(settings.state_backend)

        # Guard: file/memory backend + multi-worker = data corruption
        if settings.workers > 1 and backend_type.value != "redis":
            raise RuntimeError(
                f"state_backend='{backend_type.value}' does not support "
                f"workers={settings.workers}. Use state_backend='redis' for multi-worker."
            )
        if settings.workers > 1 and settings.object_store == "local" and not settings.signing_secret:
            raise RuntimeError("Multi-worker local object store needs a shared signing_secret")

        state_manager = await get_state_manager(
            backend_type=backend_type,
            storage_path=settings.state_path,
            redis_url=settings.redis_url,
        )

        store = _create_object_store(settings)
        await store.initialize()

        _services = build_services(settings, state_manager, store)

        if settings.reconcile_on_startup:
            await _reconcile_ledgers(_services)

        # Background tasks
        if settings.deletion_worker_enabled:
            _tasks.append(asyncio.create_task(_services.deletion_worker.run(settings.deletion_poll_interval)))
        if settings.reconcile_interval > 0:
            _tasks.append(asyncio.create_task(_services.reconciler.run_forever(settings.reconcile_interval)))
            sweep_interval = max(60, min(settings.reconcile_interval, settings.reservation_ttl) // 4)
            _tasks.append(asyncio.create_task(reservation_sweep_loop(sweep_interval, lambda: _services)))
        if settings.config_watch:
            _tasks.append(asyncio.create_task(config_watch_loop(app, _propagate_hot_changes)))

        logger.info("Started on port %d", settings.port)
        logger.info("State backend: %s", backend_type.value)
        logger.info("Object store: %s (bucket %s)", store.name, store.bucket)
        logger.info(
            "Default quota: %.0f MB (grace %.0f MB)",
            settings.default_quota_bytes / (1024 * 1024),
            settings.grace_bytes / (1024 * 1024),
        )
        if settings.config_watch:
            logger.info("Config watch enabled (interval: %ds)", settings.config_watch_interval)

    async def shutdown() -> None:
        global _services
        for task in _tasks:
            task.cancel()
        if _tasks:
            await asyncio.gather(*_tasks, return_exceptions=True)
        _tasks.clear()
        if _services:
            await _services.store.close()
            _services = None
        await close_state_manager()
        logger.info("Shutdown complete")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await startup(app)
        try:
            yield
        finally:
            await shutdown()

    app = FastAPI(
        title="ReelVault",
        description="Video library storage quota and upload lifecycle service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.config_mtime = _get_config_mtime(settings)

    @app.exception_handler(ReelVaultError)
    async def reelvault_error_handler(request: Request, exc: ReelVaultError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ── CORS ─────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag"],
    )

    # ── Auth middleware ───────────────────────────────────────
    if settings.auth_enabled:
        app.add_middleware(
            TokenAuthMiddleware,
            valid_tokens=settings.auth_tokens,
            exclude_paths=[
                "/docs",
                "/redoc",
                "/openapi.json",
                "/api/health",
                "/api/info",
                "/api/storage/parts/",
            ],
        )

    # ── Proxies ──────────────────────────────────────────────
    services_proxy: Any = ServicesProxy(lambda: _services)
    app.state.services = services_proxy
    app.state.num_workers = settings.workers

    # ── Register routes ──────────────────────────────────────
    app.include_router(create_uploads_router(services_proxy))
    app.include_router(create_videos_router(services_proxy))
    app.include_router(create_storage_router(services_proxy))
    app.include_router(create_info_router(services_proxy))

    # Admin routes
    app.include_router(create_admin_router(services_proxy, _propagate_hot_changes))

    return app


# ── Server runner ────────────────────────────────────────────


def run_server(
    host: Optional[str] = None,
    port: Optional[int] = None,
    workers: Optional[int] = None,
    config_path: Optional[Path] = None,
    storage_path: Optional[Path] = None,
    state_backend: Optional[str] = None,
    redis_url: Optional[str] = None,
) -> None:
    """Run the server.

    Config file values are used as defaults. CLI flags (non-None) override them.
    """
    settings = load_server_settings(config_path)

    # Only override settings when explicitly provided (not None)
    if host is not None:
        settings.host = host
    if port is not None:
        settings.port = port
    if workers is not None:
        settings.workers = workers
    if storage_path is not None:
        settings.storage_path = storage_path
    if state_backend is not None:
        settings.state_backend = state_backend  # type: ignore[assignment]
    if redis_url is not None:
        settings.redis_url = redis_url

    settings.storage_path.mkdir(parents=True, exist_ok=True)
    settings.state_path.mkdir(parents=True, exist_ok=True)

    if settings.workers > 1 and settings.state_backend != "redis":
        logger.error(
            "state_backend='%s' does not support workers=%d. " "Multi-worker requires state_backend='redis'.",
            settings.state_backend,
            settings.workers,
        )
        raise SystemExit(1)

    if settings.workers > 1:
        # Multi-worker mode: uvicorn needs an import string to fork workers.
        # Pass CLI overrides via env vars so each worker's create_app() picks
        # them up through load_server_settings() / pydantic env_prefix.
        import os

        if config_path is not None:
            os.environ["REELVAULT_CONFIG"] = str(Path(config_path).resolve())
        if host is not None:
            os.environ["REELVAULT_HOST"] = host
        if port is not None:
            os.environ["REELVAULT_PORT"] = str(port)
        if storage_path is not None:
            os.environ["REELVAULT_STORAGE_PATH"] = str(storage_path)
        if state_backend is not None:
            os.environ["REELVAULT_STATE_BACKEND"] = state_backend
        if redis_url is not None:
            os.environ["REELVAULT_REDIS_URL"] = redis_url

        uvicorn.run(
            "reelvault.server.main:app",
            host=settings.host,
            port=settings.port,
            workers=settings.workers,
        )
    else:
        app = create_app(settings)

        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
        )


# For uvicorn command line: uvicorn reelvault.server.main:app
app = create_app()


if __name__ == "__main__":
    run_server()
