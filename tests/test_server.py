"""Tests for the pairing HTTP server."""

import asyncio
import json

import pytest
import pytest_asyncio

from qrlink.pairing.hub import HubEvent
from qrlink.pairing.registry import SessionRegistry
from qrlink.provider import CloseEvent, QrEvent
from qrlink.server import KEEPALIVE_LINE, PairingServer, format_sse
from tests.fakes import wait_until


@pytest.fixture
def registry(factory, store, config):
    return SessionRegistry(factory, store, config)


@pytest.fixture
def server(registry, config):
    return PairingServer(registry, keepalive_interval=config.pairing.keepalive_interval)


@pytest_asyncio.fixture
async def client(aiohttp_client, server):
    client = await aiohttp_client(server.app)
    yield client
    await server.registry.close()


async def read_frame(resp, timeout=1.0) -> bytes:
    """Read one SSE frame (up to the blank line)."""
    lines = []
    while True:
        line = await asyncio.wait_for(resp.content.readline(), timeout=timeout)
        if not line:
            break
        if line == b"\n":
            break
        lines.append(line)
    return b"".join(lines) + b"\n"


def parse_frame(frame: bytes) -> dict:
    assert frame.startswith(b"data: ")
    return json.loads(frame[len(b"data: "):])


class TestFormatSse:
    """Tests for SSE framing."""

    def test_data_frame(self):
        """Events are JSON in a data frame."""
        assert format_sse(HubEvent.qr("ABC123")) == b'data: {"type": "qr", "value": "ABC123"}\n\n'


class TestHealth:
    """Tests for health endpoint."""

    @pytest.mark.asyncio
    async def test_health_endpoint(self, client):
        """Health endpoint returns OK."""
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.text() == "OK"


class TestStartPairing:
    """Tests for starting a lineage."""

    @pytest.mark.asyncio
    async def test_qr_pairing_pending(self, client, registry):
        """Without a number the response acknowledges QR pairing."""
        resp = await client.post("/api/pair")

        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "pending"
        assert data["session_id"] in registry

    @pytest.mark.asyncio
    async def test_code_pairing_via_query(self, client, factory):
        """A number in the query string returns a pairing code."""
        resp = await client.get("/api/pair", params={"number": "+1 555-123-4567"})

        assert resp.status == 200
        data = await resp.json()
        assert data["code"] == "ABCD1234"
        assert factory.latest.begin_calls == ["15551234567"]

    @pytest.mark.asyncio
    async def test_code_pairing_via_json(self, client):
        """A number in the JSON body returns a pairing code."""
        resp = await client.post("/api/pair", json={"number": 15551234567})

        assert resp.status == 200
        assert (await resp.json())["code"] == "ABCD1234"

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        """Malformed bodies are rejected."""
        resp = await client.post(
            "/api/pair", data=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid JSON body"

    @pytest.mark.asyncio
    async def test_invalid_number(self, client):
        """Numbers without digits are rejected."""
        resp = await client.get("/api/pair", params={"number": "abc"})

        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid number"

    @pytest.mark.asyncio
    async def test_duplicate_number_conflict(self, client):
        """A running lineage for the number yields 409."""
        await client.get("/api/pair", params={"number": "15551234567"})

        resp = await client.get("/api/pair", params={"number": "15551234567"})

        assert resp.status == 409

    @pytest.mark.asyncio
    async def test_capacity_exhausted(self, client, config):
        """A full registry yields 429."""
        config.pairing.max_sessions = 1
        await client.post("/api/pair")

        resp = await client.post("/api/pair")

        assert resp.status == 429

    @pytest.mark.asyncio
    async def test_provider_unavailable(self, client, factory):
        """Provider failures surface as a coarse 503."""
        factory.error = RuntimeError("secret internal detail")

        resp = await client.post("/api/pair")

        assert resp.status == 503
        body = await resp.json()
        assert body == {"error": "Service Unavailable"}


class TestPairingStatus:
    """Tests for status and cancel."""

    @pytest.mark.asyncio
    async def test_status(self, client, factory, registry):
        """Status reflects the session snapshot."""
        session_id = (await (await client.post("/api/pair")).json())["session_id"]
        factory.latest.push(QrEvent("ABC123"))
        await wait_until(lambda: registry.get(session_id).current_qr == "ABC123")

        resp = await client.get(f"/api/pair/{session_id}")
        data = await resp.json()
        assert resp.status == 200
        assert data["state"] == "awaiting-qr"
        assert data["qr"] == "ABC123"

    @pytest.mark.asyncio
    async def test_status_unknown(self, client):
        """Unknown sessions are 404."""
        resp = await client.get("/api/pair/deadbeef")
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_cancel(self, client, registry):
        """DELETE aborts the lineage."""
        session_id = (await (await client.post("/api/pair")).json())["session_id"]
        session = registry.get(session_id)

        resp = await client.delete(f"/api/pair/{session_id}")

        assert resp.status == 200
        assert (await resp.json())["status"] == "closed-terminal"
        assert session.is_terminal
        assert session.last_close_reason == "aborted"

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, client):
        """Cancelling an unknown session is 404."""
        resp = await client.delete("/api/pair/deadbeef")
        assert resp.status == 404


class TestEvents:
    """Tests for the observer event stream."""

    @pytest.mark.asyncio
    async def test_stream_snapshot_then_live_events(self, client, factory):
        """Observers get the snapshot, live QR events and the terminal status."""
        session_id = (await (await client.post("/api/pair")).json())["session_id"]

        resp = await client.get(f"/api/pair/{session_id}/events")
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")

        assert parse_frame(await read_frame(resp)) == {"type": "status", "value": "connecting"}

        factory.latest.push(QrEvent("ABC123"))
        frames = []
        while {"type": "qr", "value": "ABC123"} not in frames:
            frame = await read_frame(resp)
            if frame.startswith(b"data: "):
                frames.append(parse_frame(frame))
        assert {"type": "status", "value": "awaiting-qr"} in frames

        factory.latest.push(CloseEvent("logged-out"))
        last = None
        while True:
            frame = await read_frame(resp)
            if frame == b"\n":
                break
            if frame.startswith(b"data: "):
                last = parse_frame(frame)
        assert last == {"type": "status", "value": "closed-terminal"}

    @pytest.mark.asyncio
    async def test_keepalive_comments(self, client):
        """Idle streams carry keep-alive comments."""
        session_id = (await (await client.post("/api/pair")).json())["session_id"]

        resp = await client.get(f"/api/pair/{session_id}/events")
        await read_frame(resp)
        frame = await read_frame(resp)

        assert frame == KEEPALIVE_LINE

    @pytest.mark.asyncio
    async def test_events_unknown_session(self, client):
        """Streams for unknown sessions are 404."""
        resp = await client.get("/api/pair/deadbeef/events")
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_disconnect_detaches_observer(self, client, registry):
        """Closing the stream unsubscribes the observer."""
        session_id = (await (await client.post("/api/pair")).json())["session_id"]
        session = registry.get(session_id)

        resp = await client.get(f"/api/pair/{session_id}/events")
        await read_frame(resp)
        assert len(session.hub) == 1

        resp.close()
        await wait_until(lambda: len(session.hub) == 0)


class TestQrSvg:
    """Tests for the QR image endpoint."""

    @pytest.mark.asyncio
    async def test_no_qr_yet(self, client):
        """Without a QR payload the image is 404."""
        session_id = (await (await client.post("/api/pair")).json())["session_id"]

        resp = await client.get(f"/api/pair/{session_id}/qr.svg")

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_svg_rendered(self, client, factory, registry):
        """The current QR renders as SVG."""
        session_id = (await (await client.post("/api/pair")).json())["session_id"]
        factory.latest.push(QrEvent("ABC123"))
        await wait_until(lambda: registry.get(session_id).current_qr == "ABC123")

        resp = await client.get(f"/api/pair/{session_id}/qr.svg")

        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("image/svg+xml")
        assert "<svg" in await resp.text()
