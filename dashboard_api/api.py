"""
Relay Monitor API Endpoints.

============================================================
PURPOSE
============================================================
HTTP and websocket surface of the relay monitor.

ROUTES:
    GET    /health
    GET    /api/metrics/snapshot
    GET    /api/channels/resolve
    POST   /api/channels/resolve-batch
    GET    /api/channels/cache
    DELETE /api/channels/cache
    POST   /api/clearing/token
    POST   /api/clearing/verify
    GET    /api/clearing/status/{token}
    GET    /api/clearing/statistics
    GET    /api/clearing/wallets/{wallet}/statistics
    GET    /api/clearing/wallets/{wallet}/operations
    GET    /api/ws/clearing-updates     (websocket)

ERROR MAPPING:
    InvalidRequest, bad body        400
    TokenNotFound, ResolutionNotFound  404
    AlreadyProcessed                409
    TokenExpired                    410
    upstream failures               502
    timeouts                        504

============================================================
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Set

import aiohttp
from aiohttp import web
from pydantic import ValidationError

from core.clock import to_iso8601
from core.exceptions import RelayMonitorError, UpstreamError
from channel_resolver import (
    ChannelResolver,
    ResolutionNotFound,
    ResolutionTimeout,
)
from clearing import (
    ClearingEngine,
    ClearingStatus,
    InvalidRequest,
    TokenNotFound,
    TokenExpired,
    AlreadyProcessed,
    DispatchTimeout,
    PollTimeout,
    format_amount,
)
from metrics_ingestion import MetricsIngestionService

from .schemas import (
    TokenRequestCreate,
    PaymentVerificationCreate,
    ResolveBatchCreate,
    SubscriptionMessage,
)


logger = logging.getLogger(__name__)


MAX_PAGE_SIZE = 100

# ============================================================
# JSON ENCODER
# ============================================================

class ApiEncoder(json.JSONEncoder):
    """JSON encoder for API payloads."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return to_iso8601(obj)
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def json_response(data: Any, status: int = 200) -> web.Response:
    """Create JSON response."""
    return web.Response(
        text=json.dumps(data, cls=ApiEncoder),
        status=status,
        content_type="application/json",
    )


# ============================================================
# ERROR MAPPING
# ============================================================

_STATUS_BY_ERROR = (
    (InvalidRequest, 400),
    (TokenNotFound, 404),
    (ResolutionNotFound, 404),
    (AlreadyProcessed, 409),
    (TokenExpired, 410),
    (ResolutionTimeout, 504),
    (DispatchTimeout, 504),
    (PollTimeout, 504),
    (UpstreamError, 502),
)


def status_for_error(error: RelayMonitorError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    # ResolutionFailed wraps an upstream failure
    if isinstance(error.cause, UpstreamError):
        return 502
    return 500


def error_response(error: Exception) -> web.Response:
    """Map an exception to a JSON error response."""
    if isinstance(error, ValidationError):
        return json_response({
            "status": "error",
            "error": {
                "type": "ValidationError",
                "code": "INVALID_REQUEST",
                "message": "Request body failed validation",
                "details": json.loads(error.json()),
            },
        }, status=400)

    if isinstance(error, RelayMonitorError):
        status = status_for_error(error)
        log = logger.error if status >= 500 else logger.warning
        log(f"API error {status}: {error}")
        return json_response({"status": "error", "error": error.to_dict()}, status=status)

    logger.error(f"Unhandled API error: {error!r}")
    return json_response({
        "status": "error",
        "error": {"type": type(error).__name__, "code": "INTERNAL_ERROR", "message": str(error)},
    }, status=500)


async def _read_json(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequest("Request body must be JSON")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


def _query_int(request: web.Request, name: str, default: int, minimum: int, maximum: Optional[int]) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidRequest(f"{name} must be an integer")
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f"{minimum}-{maximum}" if maximum is not None else f">= {minimum}"
        raise InvalidRequest(f"{name} must be {bounds}")
    return value


# ============================================================
# API HANDLERS
# ============================================================

class RelayMonitorAPI:
    """HTTP and websocket handlers."""

    def __init__(
        self,
        ingestion: MetricsIngestionService,
        resolver: ChannelResolver,
        engine: ClearingEngine,
        service_address: str = "",
        snapshot_max_age_seconds: float = 30.0,
    ):
        self._ingestion = ingestion
        self._resolver = resolver
        self._engine = engine
        self._service_address = service_address
        self._snapshot_max_age = snapshot_max_age_seconds
        self._sockets: Set[web.WebSocketResponse] = set()

    # --------------------------------------------------------
    # HEALTH
    # --------------------------------------------------------

    async def health(self, request: web.Request) -> web.Response:
        """GET /health"""
        latest = self._ingestion.latest
        return json_response({
            "status": "ok",
            "data": {
                "last_ingestion": latest.report.observed_at if latest else None,
                "resolver_cache": self._resolver.cache_stats(),
                "clearing_tokens": self._engine.token_count(),
                "subscribers": self._engine.hub.subscriber_count(),
                "websockets": len(self._sockets),
            },
        })

    # --------------------------------------------------------
    # METRICS
    # --------------------------------------------------------

    async def get_snapshot(self, request: web.Request) -> web.Response:
        """
        GET /api/metrics/snapshot

        Query: refresh=true forces a new ingestion pass.
        """
        try:
            if request.query.get("refresh", "").lower() in ("1", "true", "yes"):
                result = await self._ingestion.refresh()
            else:
                result = await self._ingestion.get_snapshot(self._snapshot_max_age)
            return json_response({
                "status": "ok",
                "data": result.snapshot.to_dict(),
                "report": result.report.to_dict(),
            })
        except Exception as e:
            return error_response(e)

    # --------------------------------------------------------
    # CHANNELS
    # --------------------------------------------------------

    async def resolve_channel(self, request: web.Request) -> web.Response:
        """GET /api/channels/resolve?chain_id=...&channel_id=...&port_id=transfer"""
        try:
            chain_id = request.query.get("chain_id", "").strip()
            channel_id = request.query.get("channel_id", "").strip()
            port_id = request.query.get("port_id", "transfer").strip() or "transfer"
            if not chain_id or not channel_id:
                raise InvalidRequest("chain_id and channel_id are required")

            resolution = await self._resolver.resolve(chain_id, channel_id, port_id)
            return json_response({"status": "ok", "data": resolution.to_dict()})
        except Exception as e:
            return error_response(e)

    async def resolve_batch(self, request: web.Request) -> web.Response:
        """POST /api/channels/resolve-batch"""
        try:
            body = ResolveBatchCreate.model_validate(await _read_json(request))
            keys = [(c.chain_id, c.channel_id, c.port_id or "transfer") for c in body.channels]
            results = await self._resolver.resolve_batch(keys)
            return json_response({
                "status": "ok",
                "data": [r.to_dict() for r in results],
                "failed": sum(1 for r in results if not r.ok),
            })
        except Exception as e:
            return error_response(e)

    async def get_cache_stats(self, request: web.Request) -> web.Response:
        """GET /api/channels/cache"""
        return json_response({"status": "ok", "data": self._resolver.cache_stats()})

    async def clear_cache(self, request: web.Request) -> web.Response:
        """DELETE /api/channels/cache"""
        self._resolver.clear()
        return json_response({"status": "ok", "data": self._resolver.cache_stats()})

    # --------------------------------------------------------
    # CLEARING
    # --------------------------------------------------------

    async def request_token(self, request: web.Request) -> web.Response:
        """POST /api/clearing/token"""
        try:
            body = TokenRequestCreate.model_validate(await _read_json(request))
            token = self._engine.request_token(
                wallet_address=body.wallet_address,
                chain_id=body.chain_id,
                request_type=body.to_request_type(),
                targets=body.targets.to_targets(),
            )
            return json_response({
                "status": "ok",
                "data": {
                    "token": token.to_dict(),
                    "payment_address": self._service_address,
                    "payment_memo": token.payment_memo,
                    "payment_amount": str(token.total_required),
                    "payment_display": format_amount(token.total_required, token.accepted_denom),
                    "expires_in": token.expires_at - token.issued_at,
                },
            }, status=201)
        except Exception as e:
            return error_response(e)

    async def verify_payment(self, request: web.Request) -> web.Response:
        """POST /api/clearing/verify"""
        try:
            body = PaymentVerificationCreate.model_validate(await _read_json(request))
            verification = await self._engine.verify_payment(body.token, body.tx_hash)
            return json_response({"status": "ok", "data": verification.to_dict()})
        except Exception as e:
            return error_response(e)

    async def get_status(self, request: web.Request) -> web.Response:
        """GET /api/clearing/status/{token}"""
        try:
            status = self._engine.get_status(request.match_info["token"])
            return json_response({"status": "ok", "data": status.to_dict()})
        except Exception as e:
            return error_response(e)

    async def get_statistics(self, request: web.Request) -> web.Response:
        """GET /api/clearing/statistics"""
        return json_response({"status": "ok", "data": self._engine.statistics().to_dict()})

    async def get_wallet_statistics(self, request: web.Request) -> web.Response:
        """GET /api/clearing/wallets/{wallet}/statistics"""
        stats = self._engine.wallet_statistics(request.match_info["wallet"])
        return json_response({"status": "ok", "data": stats.to_dict()})

    async def get_operations(self, request: web.Request) -> web.Response:
        """
        GET /api/clearing/wallets/{wallet}/operations

        Query: limit (1-100, default 20), offset (default 0).
        """
        try:
            limit = _query_int(request, "limit", 20, 1, MAX_PAGE_SIZE)
            offset = _query_int(request, "offset", 0, 0, None)
            wallet = request.match_info["wallet"]
            operations = self._engine.operations_for(wallet, limit=limit, offset=offset)
            return json_response({
                "status": "ok",
                "data": [op.to_dict() for op in operations],
                "limit": limit,
                "offset": offset,
            })
        except Exception as e:
            return error_response(e)

    # --------------------------------------------------------
    # WEBSOCKET
    # --------------------------------------------------------

    async def clearing_updates(self, request: web.Request) -> web.WebSocketResponse:
        """
        GET /api/ws/clearing-updates

        Client sends {"type": "subscribe" | "unsubscribe", "token": ...}.
        Server pushes {"type": "clearing_update", "token", "status"}.
        """
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        self._sockets.add(ws)
        subscriptions: Dict[str, Any] = {}

        async def push(status: ClearingStatus) -> None:
            if ws.closed:
                return
            await ws.send_str(json.dumps({
                "type": "clearing_update",
                "token": status.token,
                "status": status.to_dict(),
            }, cls=ApiEncoder))

        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_ws_message(ws, msg.data, subscriptions, push)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"WebSocket error: {ws.exception()}")
        finally:
            for subscription in subscriptions.values():
                subscription.unsubscribe()
            self._sockets.discard(ws)

        return ws

    async def _handle_ws_message(self, ws, data: str, subscriptions: Dict[str, Any], push) -> None:
        try:
            message = SubscriptionMessage.model_validate_json(data)
        except ValidationError:
            await ws.send_json({"type": "error", "error": "expected {type, token}"})
            return

        if message.type == "unsubscribe":
            subscription = subscriptions.pop(message.token, None)
            if subscription is not None:
                subscription.unsubscribe()
            await ws.send_json({"type": "unsubscribed", "token": message.token})
            return

        if message.type != "subscribe":
            await ws.send_json({"type": "error", "error": f"unknown message type {message.type}"})
            return

        try:
            current = self._engine.get_status(message.token)
        except TokenNotFound:
            await ws.send_json({"type": "error", "token": message.token, "error": "token not found"})
            return

        if message.token not in subscriptions:
            subscriptions[message.token] = self._engine.subscribe(message.token, push)
        await push(current)

    async def close_sockets(self, app: Optional[web.Application] = None) -> None:
        for ws in list(self._sockets):
            await ws.close(code=aiohttp.WSCloseCode.GOING_AWAY, message=b"Server shutdown")


# ============================================================
# APPLICATION FACTORY
# ============================================================

def create_app(api: RelayMonitorAPI) -> web.Application:
    """Create the aiohttp application with every route."""
    app = web.Application()

    app.router.add_get("/health", api.health)
    app.router.add_get("/api/metrics/snapshot", api.get_snapshot)
    app.router.add_get("/api/channels/resolve", api.resolve_channel)
    app.router.add_post("/api/channels/resolve-batch", api.resolve_batch)
    app.router.add_get("/api/channels/cache", api.get_cache_stats)
    app.router.add_delete("/api/channels/cache", api.clear_cache)
    app.router.add_post("/api/clearing/token", api.request_token)
    app.router.add_post("/api/clearing/verify", api.verify_payment)
    app.router.add_get("/api/clearing/status/{token}", api.get_status)
    app.router.add_get("/api/clearing/statistics", api.get_statistics)
    app.router.add_get("/api/clearing/wallets/{wallet}/statistics", api.get_wallet_statistics)
    app.router.add_get("/api/clearing/wallets/{wallet}/operations", api.get_operations)
    app.router.add_get("/api/ws/clearing-updates", api.clearing_updates)

    app.on_shutdown.append(api.close_sockets)

    logger.info("Relay monitor API routes registered")
    return app


__all__ = [
    "ApiEncoder",
    "json_response",
    "status_for_error",
    "error_response",
    "RelayMonitorAPI",
    "create_app",
]
