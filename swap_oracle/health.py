"""Simple health check HTTP server."""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog
from aiohttp import web

logger = structlog.get_logger()


class HealthServer:
    """HTTP endpoints for liveness, status and tracked orders."""

    def __init__(
        self,
        port: int = 8080,
        tracking_provider: Optional[Callable[[], list[dict[str, Any]]]] = None,
    ):
        self.port = port
        self.tracking_provider = tracking_provider
        self.app = web.Application()
        self.app.router.add_get("/health", self.health_handler)
        self.app.router.add_get("/status", self.status_handler)
        self.app.router.add_get("/tracking", self.tracking_handler)
        self.runner = None
        self.site = None
        self._status_data: Dict[str, Any] = {}

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    async def health_handler(self, request):
        return web.json_response({
            "status": "healthy",
            "timestamp": self._now(),
            "service": "swap-oracle",
        })

    async def status_handler(self, request):
        return web.json_response({
            "status": "running",
            "timestamp": self._now(),
            "service": "swap-oracle",
            **self._status_data,
        })

    async def tracking_handler(self, request):
        sessions = self.tracking_provider() if self.tracking_provider else []
        return web.json_response({
            "timestamp": self._now(),
            "count": len(sessions),
            "sessions": sessions,
        })

    def update_status(self, **kwargs):
        self._status_data.update(kwargs)

    async def start(self):
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()
            self.site = web.TCPSite(self.runner, "0.0.0.0", self.port)
            await self.site.start()
            logger.info("Health server started", port=self.port)
        except OSError as e:
            logger.error("Failed to start health server", error=str(e))

    async def stop(self):
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Health server stopped")
