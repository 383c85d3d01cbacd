"""HTTP interface for the monitoring engine.

Routes:
    GET  /health          liveness probe
    GET  /metrics         Prometheus exposition
    GET  /status          feed, scanner and execution summary
    GET  /prices          watch-list prices, defaults flagged as not live
    GET  /opportunities   latest ranked opportunity list
    GET  /borrowers       latest evaluated borrower list
    GET  /executions      execution history, newest first
    POST /executions      execute {"opportunity_id": ...}
"""

import json
import logging

from aiohttp import web

from liquidation_monitor.api.serializers import (
    format_timestamp,
    serialize_borrower_health,
    serialize_execution,
    serialize_opportunity,
    serialize_price,
)
from liquidation_monitor.core.engine import MonitoringEngine
from liquidation_monitor.core.errors import DuplicateExecutionInProgress, OpportunityNotFound
from liquidation_monitor.services.metrics import get_content_type, get_metrics

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", MonitoringEngine)


def _engine(request: web.Request) -> MonitoringEngine:
    return request.app[ENGINE_KEY]


def _error(status: int, code: str, message: str) -> web.Response:
    return web.json_response({"error": code, "message": message}, status=status)


async def health_handler(_request: web.Request) -> web.Response:
    return web.json_response({"status": "healthy"})


async def metrics_handler(_request: web.Request) -> web.Response:
    """Prometheus metrics endpoint."""
    return web.Response(
        body=get_metrics(),
        headers={"Content-Type": get_content_type()},
    )


async def status_handler(request: web.Request) -> web.Response:
    return web.json_response(_engine(request).get_status())


async def prices_handler(request: web.Request) -> web.Response:
    engine = _engine(request)
    return web.json_response({
        "last_updated": format_timestamp(engine.price_feed.last_update),
        "prices": [serialize_price(symbol, entry) for symbol, entry in engine.get_prices().items()],
    })


async def opportunities_handler(request: web.Request) -> web.Response:
    engine = _engine(request)
    return web.json_response({
        "last_updated": format_timestamp(engine.scanner.last_updated),
        "opportunities": [serialize_opportunity(o) for o in engine.get_opportunities()],
    })


async def borrowers_handler(request: web.Request) -> web.Response:
    engine = _engine(request)
    return web.json_response({
        "last_updated": format_timestamp(engine.scanner.last_updated),
        "borrowers": [serialize_borrower_health(b) for b in engine.get_borrowers()],
    })


async def list_executions_handler(request: web.Request) -> web.Response:
    engine = _engine(request)
    return web.json_response({
        "in_flight": [serialize_execution(r) for r in engine.executor.in_flight()],
        "executions": [serialize_execution(r) for r in engine.get_execution_history()],
    })


async def create_execution_handler(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error(400, "BAD_REQUEST", "Request body must be UTF-8 JSON")

    opportunity_id = body.get("opportunity_id") if isinstance(body, dict) else None
    if not isinstance(opportunity_id, str) or not opportunity_id:
        return _error(400, "BAD_REQUEST", "opportunity_id is required")

    try:
        record = await _engine(request).request_execution(opportunity_id)
    except OpportunityNotFound as e:
        return _error(404, "NOT_FOUND", str(e))
    except DuplicateExecutionInProgress as e:
        return _error(409, e.code, str(e))

    # Failed executions are still a completed request
    return web.json_response(serialize_execution(record))


def create_app(engine: MonitoringEngine) -> web.Application:
    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_get("/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)
    app.router.add_get("/status", status_handler)
    app.router.add_get("/prices", prices_handler)
    app.router.add_get("/opportunities", opportunities_handler)
    app.router.add_get("/borrowers", borrowers_handler)
    app.router.add_get("/executions", list_executions_handler)
    app.router.add_post("/executions", create_execution_handler)
    return app


async def run_api_server(engine: MonitoringEngine, host: str = "0.0.0.0", port: int = 8080):
    """Run the HTTP server; returns the runner for cleanup."""
    runner = web.AppRunner(create_app(engine))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"API server running on http://{host}:{port}")
    return runner
