"""
Local HTTP endpoint for liveness, readiness, call inspection and metrics.

/live     process is up
/ready    200 once the bridge event stream is connected, else 503
/health   JSON summary of stream and call state
/calls    active calls with their conversation state
/metrics  Prometheus exposition
"""

from typing import Optional

import structlog
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from voicecall.core.event_manager import EventManager

logger = structlog.get_logger(__name__)


class HealthServer:
    def __init__(self, manager: EventManager, host: str = "127.0.0.1", port: int = 15000):
        self.manager = manager
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/live", self._live_handler)
        app.router.add_get("/ready", self._ready_handler)
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/calls", self._calls_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def start(self) -> None:
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        await site.start()
        self._runner = runner
        logger.info("Health endpoint started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Health endpoint stopped")

    async def _live_handler(self, request):
        return web.json_response({"status": "alive"})

    async def _ready_handler(self, request):
        ready = self.manager.is_running and self.manager.is_connected()
        return web.json_response({"ready": ready}, status=200 if ready else 503)

    async def _health_handler(self, request):
        conversations = self.manager.conversations.contexts()
        states = {}
        for context in conversations:
            states[context.state.value] = states.get(context.state.value, 0) + 1
        return web.json_response({
            "running": self.manager.is_running,
            "event_stream_connected": self.manager.is_connected(),
            "bridge_url": self.manager.client.base_url,
            "active_calls": len(self.manager.list_active_calls()),
            "conversations": len(conversations),
            "conversation_states": states,
        })

    async def _calls_handler(self, request):
        calls = []
        for record in self.manager.list_active_calls():
            entry = record.to_dict()
            context = self.manager.conversations.peek(record.call_id)
            if context is not None:
                entry["conversation"] = context.to_dict()
            calls.append(entry)
        return web.json_response({"calls": calls})

    async def _metrics_handler(self, request):
        """Expose Prometheus metrics."""
        data = generate_latest()
        # aiohttp rejects a charset inside content_type=, so pass the raw header
        return web.Response(body=data, headers={"Content-Type": CONTENT_TYPE_LATEST})
