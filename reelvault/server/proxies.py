"""Lazy proxy objects for late-bound server singletons.

These proxies allow routers to be registered at import time while the
actual service instances are created during the ``startup`` event.
"""

from typing import Any


class ServicesProxy:
    """Proxy that resolves to the global Services container after startup."""

    def __init__(self, getter: Any) -> None:
        self._getter = getter

    def __getattr__(self, name: str) -> Any:
        target = self._getter()
        if target is None:
            raise RuntimeError("Services not initialized")
        return getattr(target, name)
