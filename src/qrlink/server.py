"""HTTP server for qrlink.

Serves the operator pairing API and the observer event stream:

- ``POST /api/pair`` / ``GET /api/pair?number=`` start a lineage
- ``GET /api/pair/{session_id}`` reads its status
- ``DELETE /api/pair/{session_id}`` aborts it
- ``GET /api/pair/{session_id}/events`` streams QR/status events (SSE)
- ``GET /api/pair/{session_id}/qr.svg`` renders the current QR
"""

import json
import logging
from typing import Optional

from aiohttp import web

from qrlink.errors import (
    InvalidIdentifier,
    PairingInProgress,
    ProviderUnavailable,
    SessionNotFound,
    TooManySessions,
)
from qrlink.pairing.hub import EVENT_STATUS, HubEvent
from qrlink.pairing.qr_render import QrRenderer
from qrlink.pairing.registry import SessionRegistry
from qrlink.pairing.session import PairingRequest, PairingState

logger = logging.getLogger(__name__)

KEEPALIVE_LINE = b": keepalive\n\n"


def format_sse(event: HubEvent) -> bytes:
    """Encode a hub event as one SSE ``data:`` frame."""
    return f"data: {json.dumps(event.to_dict())}\n\n".encode("utf-8")


class PairingServer:
    """HTTP server for the pairing API and observer streams."""

    def __init__(
        self,
        registry: SessionRegistry,
        keepalive_interval: float = 15.0,
        access_log: Optional[logging.Logger] = None,
    ):
        """Initialize server.

        Args:
            registry: Registry that owns the pairing lineages.
            keepalive_interval: Seconds between SSE keep-alive comments.
            access_log: Logger for one line per finished request, or None
                to leave the access log off.
        """
        self.registry = registry
        self.keepalive_interval = keepalive_interval
        self.access_log = access_log
        self.app = web.Application()
        self._setup_routes()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._port: int = 0

    def _setup_routes(self) -> None:
        """Set up all HTTP routes."""
        self.app.router.add_get("/health", self._handle_health)

        # Operator control surface
        self.app.router.add_post("/api/pair", self._handle_start_pairing)
        self.app.router.add_get("/api/pair", self._handle_start_pairing)
        self.app.router.add_get("/api/pair/{session_id}", self._handle_pairing_status)
        self.app.router.add_delete("/api/pair/{session_id}", self._handle_cancel_pairing)

        # Observers
        self.app.router.add_get("/api/pair/{session_id}/events", self._handle_events)
        self.app.router.add_get("/api/pair/{session_id}/qr.svg", self._handle_qr_svg)

    # =========================================================================
    # Health
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.Response(text="OK")

    # =========================================================================
    # Pairing API
    # =========================================================================

    async def _read_number(self, request: web.Request) -> Optional[str]:
        number = request.query.get("number")
        if request.method == "POST" and request.can_read_body:
            try:
                body = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                raise web.HTTPBadRequest(
                    text=json.dumps({"error": "Invalid JSON body"}),
                    content_type="application/json",
                )
            if isinstance(body, dict) and body.get("number") is not None:
                number = str(body["number"])
        return number or None

    async def _handle_start_pairing(self, request: web.Request) -> web.Response:
        """Start a new pairing lineage.

        Responds with a pairing code for number-based pairing, or with a
        pending acknowledgment when QR events will follow.
        """
        number = await self._read_number(request)

        try:
            session, result = await self.registry.create(PairingRequest(identifier=number))
        except InvalidIdentifier:
            return self._error_response("Invalid number", status=400)
        except PairingInProgress:
            return self._error_response("Pairing already in progress", status=409)
        except TooManySessions:
            return self._error_response("Too many pairing sessions", status=429)
        except ProviderUnavailable:
            return self._error_response("Service Unavailable", status=503)

        if result.pairing_code:
            return web.json_response(
                {"session_id": session.session_id, "code": result.pairing_code}
            )
        return web.json_response({"session_id": session.session_id, "status": "pending"})

    async def _handle_pairing_status(self, request: web.Request) -> web.Response:
        """Get pairing session status."""
        try:
            session = self.registry.require(request.match_info["session_id"])
        except SessionNotFound:
            return self._error_response("Session not found", status=404)
        return web.json_response(session.snapshot())

    async def _handle_cancel_pairing(self, request: web.Request) -> web.Response:
        """Abort a pairing lineage."""
        session_id = request.match_info["session_id"]
        try:
            await self.registry.abort(session_id)
        except SessionNotFound:
            return self._error_response("Session not found", status=404)

        return web.json_response({"status": PairingState.CLOSED_TERMINAL.value})

    # =========================================================================
    # Observers
    # =========================================================================

    async def _handle_events(self, request: web.Request) -> web.StreamResponse:
        """Stream QR/status events until the lineage ends or the client leaves."""
        try:
            session = self.registry.require(request.match_info["session_id"])
        except SessionNotFound:
            return self._error_response("Session not found", status=404)

        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            }
        )
        await response.prepare(request)

        subscription = session.hub.subscribe()
        try:
            while True:
                event = await subscription.get(timeout=self.keepalive_interval)
                if event is None:
                    if subscription.closed:
                        break
                    await response.write(KEEPALIVE_LINE)
                    continue

                await response.write(format_sse(event))
                if (
                    event.type == EVENT_STATUS
                    and event.value == PairingState.CLOSED_TERMINAL.value
                ):
                    break
        except ConnectionResetError:
            logger.debug(f"Observer {subscription.subscriber_id} went away")
        finally:
            session.hub.unsubscribe(subscription)

        return response

    async def _handle_qr_svg(self, request: web.Request) -> web.Response:
        """Render the current QR payload as SVG."""
        session = self.registry.get(request.match_info["session_id"])
        if session is None or not session.current_qr:
            return self._error_response("No QR available", status=404)

        svg = QrRenderer(session.current_qr).to_svg()
        return web.Response(
            text=svg,
            content_type="image/svg+xml",
            headers={"Cache-Control": "no-store"},
        )

    def _error_response(self, message: str, status: int = 400) -> web.Response:
        """Create JSON error response with a coarse message."""
        return web.json_response({"error": message}, status=status)

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(self, host: str, port: int) -> web.AppRunner:
        """Start the server.

        Args:
            host: Host to bind to.
            port: Port to bind to (0 for random).

        Returns:
            App runner for cleanup.
        """
        self._runner = web.AppRunner(self.app, access_log=self.access_log)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()

        if self._site._server and self._site._server.sockets:
            self._port = self._site._server.sockets[0].getsockname()[1]
        else:
            self._port = port

        logger.info(f"Pairing server started on {host}:{self._port}")
        return self._runner

    def get_port(self) -> int:
        """Get the actual bound port."""
        return self._port

    async def close(self) -> None:
        """Abort all lineages and stop the server."""
        await self.registry.close()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        logger.info("Pairing server closed")
