"""
REST endpoints next to the telemetry socket.

GET  /api/health     liveness probe
GET  /api/devices    current registry snapshot
GET  /api/metrics    last broadcast metrics
POST /api/telemetry  gateway report, validated then re-broadcast
"""

import json
import logging
import time

from aiohttp import web

from .envelopes import ReportError

logger = logging.getLogger(__name__)

SERVER_KEY = web.AppKey("telemetry_server")

routes = web.RouteTableDef()


@web.middleware
async def request_logger(request, handler):
    start = time.monotonic()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as exc:
        status = exc.status
        raise
    finally:
        duration_ms = (time.monotonic() - start) * 1000
        logger.info("%s %s %d - %dms", request.method, request.path_qs, status, duration_ms)


def cors_middleware(allowed_origins):
    allowed = set(allowed_origins)

    @web.middleware
    async def cors(request, handler):
        if request.method == "OPTIONS":
            response = web.Response(status=204)
        else:
            response = await handler(request)

        origin = request.headers.get("Origin")
        if origin and origin in allowed:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Vary"] = "Origin"
        return response

    return cors


@routes.get("/api/health")
async def health(request):
    return web.json_response({"ok": True, "ts": int(time.time() * 1000)})


@routes.get("/api/devices")
async def devices(request):
    return web.json_response(request.app[SERVER_KEY].registry.snapshot())


@routes.get("/api/metrics")
async def metrics(request):
    return web.json_response(dict(request.app[SERVER_KEY].latest_metrics))


@routes.post("/api/telemetry")
async def telemetry(request):
    body = await request.read()
    try:
        # UnicodeDecodeError is a ValueError too
        text = body.decode("utf-8")
        payload = json.loads(text) if text.strip() else {}
    except ValueError:
        logger.warning("[API] /api/telemetry: body is not JSON")
        return web.json_response({"error": "invalid JSON body"}, status=400)

    try:
        request.app[SERVER_KEY].ingest(payload)
    except ReportError as e:
        logger.warning("[API] /api/telemetry: %s", e.message)
        return web.json_response({"error": e.message}, status=e.status)
    return web.json_response({"ok": True})


def create_app(server, allowed_origins=()) -> web.Application:
    app = web.Application(middlewares=[request_logger, cors_middleware(allowed_origins)])
    app[SERVER_KEY] = server
    app.add_routes(routes)
    return app
