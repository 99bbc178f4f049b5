"""Health check and read-only JSON API."""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from aiohttp import web

from .coinjoin_service import CoinjoinService
from .timing import utc_now

logger = structlog.get_logger()

SERVICE_NAME = "wabiview"
MAX_PAGE_SIZE = 100


def _json(model) -> Any:
    return model.model_dump(mode="json")


def _int_param(request: web.Request, name: str, default: Optional[int]) -> Optional[int]:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise web.HTTPBadRequest(
            text=f'{{"error": "{name} must be an integer"}}',
            content_type="application/json",
        )


class HealthServer:
    """HTTP server for health checks and the dashboard's data."""

    def __init__(
        self,
        coinjoin_service: CoinjoinService,
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        """Initialize health server."""
        self.coinjoin_service = coinjoin_service
        self.host = host
        self.port = port
        self.app = web.Application()
        self.app.router.add_get("/health", self.health_handler)
        self.app.router.add_get("/status", self.status_handler)
        self.app.router.add_get("/api/stats", self.stats_handler)
        self.app.router.add_get("/api/coordinators", self.coordinators_handler)
        self.app.router.add_get("/api/coinjoins", self.coinjoins_handler)
        self.app.router.add_get("/api/coinjoins/{txid}", self.coinjoin_handler)
        self.runner = None
        self.site = None
        self._status_data: Dict[str, Any] = {}

    async def health_handler(self, request):
        """Handle health check requests."""
        return web.json_response({
            "status": "healthy",
            "timestamp": utc_now().isoformat(),
            "service": SERVICE_NAME,
        })

    async def status_handler(self, request):
        """Handle detailed status requests."""
        status = {
            k: v.isoformat() if isinstance(v, datetime) else v
            for k, v in self._status_data.items()
        }
        return web.json_response({
            "status": "running",
            "timestamp": utc_now().isoformat(),
            "service": SERVICE_NAME,
            **status,
        })

    async def stats_handler(self, request):
        stats = await self.coinjoin_service.get_stats()
        return web.json_response(_json(stats))

    async def coordinators_handler(self, request):
        overview = await self.coinjoin_service.get_coordinator_overview()
        return web.json_response([_json(card) for card in overview])

    async def coinjoins_handler(self, request):
        """Filtered, paginated coinjoin list."""
        page_size = _int_param(request, "page_size", 20)
        result = await self.coinjoin_service.get_filtered(
            page=_int_param(request, "page", 1),
            page_size=min(max(page_size, 1), MAX_PAGE_SIZE),
            coordinator_id=_int_param(request, "coordinator", None),
            status=request.query.get("status"),
            search=request.query.get("search"),
        )
        return web.json_response({
            **_json(result),
            "total_pages": result.total_pages,
        })

    async def coinjoin_handler(self, request):
        txid = request.match_info["txid"]
        detail = await self.coinjoin_service.get_detail(txid)
        if detail is None:
            return web.json_response({"error": "coinjoin not found"}, status=404)
        coinjoin, coordinator = detail
        return web.json_response({
            **_json(coinjoin),
            "is_confirmed": coinjoin.is_confirmed,
            "coordinator_name": coordinator.name if coordinator else None,
        })

    def update_status(self, **kwargs):
        """Update status data."""
        self._status_data.update(kwargs)

    async def start(self):
        """Start the health server."""
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()
            self.site = web.TCPSite(self.runner, self.host, self.port)
            await self.site.start()
            logger.info("Health server started", host=self.host, port=self.port)
        except OSError as e:
            logger.error("Failed to start health server", error=str(e))

    async def stop(self):
        """Stop the health server."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Health server stopped")
