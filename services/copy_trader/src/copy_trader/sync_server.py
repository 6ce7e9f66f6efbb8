"""Sync server - local HTTP state snapshot, incremental feed and operator writes."""

import asyncio
import hmac
import logging
import secrets
from typing import Optional

from aiohttp import web
import orjson

from copytrade_common.errors import (
    AuthRejected,
    ConfigurationError,
    CopyTradeError,
    InvalidInput,
    LedgerError,
    NotFound,
    RiskPolicyError,
)
from copytrade_common.util import decimal_default

from .service import CopyTraderService

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("127.0.0.1", "localhost")


def generate_api_token() -> str:
    """Random bearer token for write requests, issued once per process."""
    return secrets.token_hex(32)


def json_response(data, status: int = 200) -> web.Response:
    return web.Response(
        status=status,
        content_type="application/json",
        body=orjson.dumps(data, default=decimal_default),
    )


def error_status(error: CopyTradeError) -> int:
    """HTTP status for a copy-trade error."""
    if isinstance(error, AuthRejected):
        return 401
    if isinstance(error, InvalidInput):
        return 400
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, (LedgerError, RiskPolicyError)):
        return 409
    return 503


class SyncServer:
    """
    Local-only HTTP server for the web UI.

    Endpoints:
    - GET /api/state
    - GET /api/updates?since=N
    - GET /api/dashboard
    - GET /api/status
    - POST /api/configure
    - POST /api/plan
    - POST /api/record
    - POST /api/settle
    - POST /api/start
    - POST /api/stop

    Reads are open to local clients; every POST needs the token. Record
    and settle run in a worker thread, off the event loop.
    """

    def __init__(
        self,
        service: CopyTraderService,
        bind_host: str = "127.0.0.1",
        port: int = 8787,
        token: Optional[str] = None,
    ):
        """
        Initialize the sync server.

        Args:
            service: Copy trader service handling the commands
            bind_host: Host to bind to, localhost only
            port: Port to bind to
            token: Write token; generated if not given
        """
        if bind_host not in LOCAL_HOSTS:
            raise ConfigurationError("For security, UI host must be 127.0.0.1 or localhost")

        self.service = service
        self.bind_host = bind_host
        self.port = port
        self.token = token or generate_api_token()

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    # ---------- middleware ----------

    def is_authorized(self, request: web.Request) -> bool:
        """Check the bearer token, X-API-Key header or token query parameter in constant time."""
        supplied = request.headers.get("X-API-Key", "") or request.query.get("token", "")
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            supplied = auth[len("Bearer "):].strip()
        if not supplied:
            return False
        return hmac.compare_digest(supplied.encode(), self.token.encode())

    @web.middleware
    async def error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except CopyTradeError as e:
            status = error_status(e)
            if status >= 500:
                logger.error(f"{request.method} {request.path} failed: {e}")
            else:
                logger.info(f"{request.method} {request.path} -> {status} {e.code}: {e}")
            return json_response({"error": e.code, "message": str(e)}, status=status)

    @web.middleware
    async def auth_middleware(self, request: web.Request, handler):
        if request.method == "POST" and not self.is_authorized(request):
            logger.warning(f"Rejected unauthenticated {request.method} {request.path}")
            raise AuthRejected("missing or invalid API token")
        return await handler(request)

    # ---------- helpers ----------

    @staticmethod
    async def _read_json(request: web.Request) -> dict:
        body = await request.read()
        if not body:
            return {}
        try:
            data = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise InvalidInput(f"invalid JSON body: {e}")
        if not isinstance(data, dict):
            raise InvalidInput("JSON body must be an object")
        return data

    # ---------- reads ----------

    async def handle_state(self, request: web.Request) -> web.Response:
        """
        Handle GET /api/state

        Full snapshot plus latest_seq.
        """
        return json_response(self.service.state())

    async def handle_updates(self, request: web.Request) -> web.Response:
        """
        Handle GET /api/updates?since=N

        Records with seq > N in ascending order; empty when nothing is new.
        """
        raw = request.query.get("since", "0")
        try:
            since = int(raw)
        except ValueError:
            raise InvalidInput(f"since must be an integer, got {raw!r}")
        return json_response(self.service.updates(since))

    async def handle_dashboard(self, request: web.Request) -> web.Response:
        return json_response(self.service.dashboard())

    async def handle_status(self, request: web.Request) -> web.Response:
        poller = self.service.poller
        return json_response({
            "mode": self.service.mode.value,
            "configured": self.service.config is not None,
            "latest_seq": self.service.ledger.seq,
            "exposure": self.service.ledger.exposure,
            "poller": poller.status() if poller else {"running": False},
        })

    # ---------- writes ----------

    async def handle_configure(self, request: web.Request) -> web.Response:
        """
        Handle POST /api/configure

        Body: CopyConfig fields
        """
        data = await self._read_json(request)
        config = await self.service.configure(data)
        return json_response({"ok": True, "status": "configured", "config": config.to_dict()})

    async def handle_plan(self, request: web.Request) -> web.Response:
        """
        Handle POST /api/plan

        Body: {"leader_positions_value": ..., "leader_movement_value": ...}
        """
        data = await self._read_json(request)
        result = self.service.plan(
            data.get("leader_positions_value"), data.get("leader_movement_value")
        )
        return json_response({"ok": True, "plan": result.to_dict()})

    async def handle_record(self, request: web.Request) -> web.Response:
        """
        Handle POST /api/record

        Body: movement fields (movement_id, market_id, leader_value,
        copied_value, optional planned_value and diff_pct)
        """
        data = await self._read_json(request)
        record = await asyncio.to_thread(self.service.record, data)
        return json_response({"ok": True, "status": "recorded", "record": record.to_dict()})

    async def handle_settle(self, request: web.Request) -> web.Response:
        """
        Handle POST /api/settle

        Body: {"movement_id": ..., "pnl": ...}
        """
        data = await self._read_json(request)
        record = await asyncio.to_thread(
            self.service.settle, data.get("movement_id"), data.get("pnl")
        )
        return json_response({"ok": True, "status": "settled", "record": record.to_dict()})

    async def handle_start(self, request: web.Request) -> web.Response:
        status = await self.service.start_poller()
        logger.info("OPERATOR: poller started")
        return json_response({"ok": True, "poller": status})

    async def handle_stop(self, request: web.Request) -> web.Response:
        status = await self.service.stop_poller()
        logger.info("OPERATOR: poller stopped")
        return json_response({"ok": True, "poller": status})

    # ---------- lifecycle ----------

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self.error_middleware, self.auth_middleware])

        app.router.add_get("/api/state", self.handle_state)
        app.router.add_get("/api/updates", self.handle_updates)
        app.router.add_get("/api/dashboard", self.handle_dashboard)
        app.router.add_get("/api/status", self.handle_status)
        app.router.add_post("/api/configure", self.handle_configure)
        app.router.add_post("/api/plan", self.handle_plan)
        app.router.add_post("/api/record", self.handle_record)
        app.router.add_post("/api/settle", self.handle_settle)
        app.router.add_post("/api/start", self.handle_start)
        app.router.add_post("/api/stop", self.handle_stop)

        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.bind_host, self.port)
        await self._site.start()

        logger.info(f"Sync server started on http://{self.bind_host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()

        logger.info("Sync server stopped")
