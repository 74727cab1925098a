"""Health check and swap status HTTP server."""

from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from aiohttp import web

from .errors import UnknownOrder
from .models import SwapStatus

logger = structlog.get_logger()

SERVICE = "htlc-resolver"


class HealthServer:
    """Small HTTP server for liveness probes and read-only swap status."""

    def __init__(self, engine=None, port: int = 8080):
        self.engine = engine
        self.port = port
        self.app = web.Application()
        self.app.router.add_get("/health", self.health_handler)
        self.app.router.add_get("/status", self.status_handler)
        self.app.router.add_get("/swaps/{order_id}", self.swap_handler)
        self.runner = None
        self.site = None
        self._status_data: Dict[str, Any] = {}

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(timezone.utc).isoformat()

    async def health_handler(self, request):
        return web.json_response({
            "status": "healthy",
            "timestamp": self._timestamp(),
            "service": SERVICE,
        })

    async def status_handler(self, request):
        """Running totals per swap status plus whatever the CLI reported."""
        counts: Dict[str, int] = {}
        if self.engine is not None:
            for state in await self.engine.list_swaps():
                counts[state.status.value] = counts.get(state.status.value, 0) + 1
        return web.json_response({
            "status": "running",
            "timestamp": self._timestamp(),
            "service": SERVICE,
            "swaps": {status.value: counts.get(status.value, 0) for status in SwapStatus},
            **self._status_data,
        })

    async def swap_handler(self, request):
        order_id = request.match_info["order_id"]
        if self.engine is None:
            raise web.HTTPServiceUnavailable()
        try:
            state = await self.engine.get_status(order_id)
        except UnknownOrder:
            return web.json_response({"error": "unknown order", "order_id": order_id}, status=404)
        # Cached action results are an internal replay detail
        return web.json_response(state.model_dump(mode="json", exclude={"results"}))

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
            logger.error("Failed to start health server", port=self.port, error=str(e))

    async def stop(self):
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Health server stopped")
