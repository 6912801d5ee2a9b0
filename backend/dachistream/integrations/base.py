"""Base integration class for chat transports and other host plugins."""

from __future__ import annotations

from typing import Any


class BaseIntegration:
    """Lifecycle hooks for integrations to react to app events."""

    async def on_app_ready(self, app: Any) -> None:  # pragma: no cover - interface
        pass

    async def on_service_ready(self, service: Any) -> None:  # pragma: no cover - interface
        pass

    async def on_shutdown(self) -> None:  # pragma: no cover - interface
        pass
