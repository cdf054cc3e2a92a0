"""Background tasks for the ReelVault server."""

import asyncio
import logging
from typing import Any, Optional

from fastapi import FastAPI

from reelvault.server.config import ServerSettings, reload_hot_settings

logger = logging.getLogger("reelvault.server")


async def reservation_sweep_loop(interval: int, get_services: Any) -> None:
    """Release expired reservations between full reconciler passes.

    Args:
        interval: Seconds between sweeps.
        get_services: Callable returning the current Services (or None).
    """
    while True:
        try:
            await asyncio.sleep(interval)
            services = get_services()
            if services:
                released, released_bytes = await services.reconciler.sweep_expired_reservations()
                if released > 0:
                    logger.info("Released %d expired reservations (%d bytes)", released, released_bytes)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Reservation sweep error: %s", e)


def _get_config_mtime(settings: ServerSettings) -> Optional[float]:
    config_path = getattr(settings, "_config_path", None)
    if config_path and config_path.exists():
        return config_path.stat().st_mtime  # type: ignore[no-any-return]
    return None


async def config_watch_loop(
    app: FastAPI,
    propagate_fn: Any,
) -> None:
    """Background task that watches the config file for changes.

    Args:
        app: FastAPI application (settings stored in ``app.state.settings``).
        propagate_fn: Callable ``(app, settings, changes) -> None`` to apply changes.
    """
    settings: ServerSettings = app.state.settings
    interval = settings.config_watch_interval

    while True:
        try:
            await asyncio.sleep(interval)
            new_mtime = _get_config_mtime(settings)
            old_mtime = app.state.config_mtime

            if new_mtime and old_mtime and new_mtime != old_mtime:
                logger.info("Config file change detected, hot-reloading...")
                changes = reload_hot_settings(settings)
                if changes:
                    propagate_fn(app, settings, changes)
                    logger.info(
                        "Auto-reloaded %d field(s): %s",
                        len(changes),
                        ", ".join(changes.keys()),
                    )
                app.state.config_mtime = new_mtime

        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Config watch error: %s", e)
