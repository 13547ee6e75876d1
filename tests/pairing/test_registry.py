"""Tests for the session registry."""

import asyncio

import pytest

from qrlink.errors import (
    InvalidIdentifier,
    PairingInProgress,
    ProviderUnavailable,
    SessionNotFound,
    TooManySessions,
)
from qrlink.pairing.registry import SessionRegistry
from qrlink.pairing.session import PairingRequest, PairingState
from qrlink.provider import CloseEvent
from tests.fakes import wait_until


@pytest.fixture
def registry(factory, store, config):
    return SessionRegistry(factory, store, config)


class TestCreate:
    """Tests for SessionRegistry.create."""

    @pytest.mark.asyncio
    async def test_create_starts_session(self, registry, factory):
        """A created session is registered and running."""
        session, result = await registry.create(PairingRequest())

        assert result.session_id == session.session_id
        assert session.session_id in registry
        assert registry.get(session.session_id) is session
        assert session.state is PairingState.CONNECTING
        assert len(factory.providers) == 1
        await registry.close()

    @pytest.mark.asyncio
    async def test_parallel_lineages_for_different_numbers(self, registry):
        """Different identifiers pair independently."""
        first, _ = await registry.create(PairingRequest("15550000001"))
        second, _ = await registry.create(PairingRequest("15550000002"))

        assert first.session_id != second.session_id
        assert len(registry) == 2
        await registry.close()

    @pytest.mark.asyncio
    async def test_duplicate_number_rejected(self, registry):
        """A second request for a running number is rejected."""
        await registry.create(PairingRequest("+1 555 000 0001"))

        with pytest.raises(PairingInProgress):
            await registry.create(PairingRequest("15550000001"))

        assert len(registry) == 1
        await registry.close()

    @pytest.mark.asyncio
    async def test_number_reusable_after_terminal(self, registry, factory):
        """Once a lineage is finished its number can pair again."""
        session, _ = await registry.create(PairingRequest("15550000001"))
        factory.latest.push(CloseEvent("logged-out"))
        await session.wait_closed(timeout=1.0)

        again, _ = await registry.create(PairingRequest("15550000001"))

        assert again.session_id != session.session_id
        await registry.close()

    @pytest.mark.asyncio
    async def test_capacity_enforced(self, factory, store, config):
        """Creating beyond max_sessions raises TooManySessions."""
        config.pairing.max_sessions = 2
        registry = SessionRegistry(factory, store, config)
        await registry.create(PairingRequest())
        await registry.create(PairingRequest())

        with pytest.raises(TooManySessions):
            await registry.create(PairingRequest())

        await registry.close()

    @pytest.mark.asyncio
    async def test_invalid_identifier(self, registry, factory):
        """Identifiers without digits are rejected before any provider is built."""
        with pytest.raises(InvalidIdentifier):
            await registry.create(PairingRequest("nope"))

        assert factory.providers == []
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_provider_unavailable_not_registered(self, registry, factory):
        """A lineage that fails to start is not kept."""
        factory.error = RuntimeError("offline")

        with pytest.raises(ProviderUnavailable):
            await registry.create(PairingRequest())

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_hub_uses_configured_queue_size(self, factory, store, config):
        """Session hubs are sized from config."""
        config.pairing.queue_size = 4
        registry = SessionRegistry(factory, store, config)

        session, _ = await registry.create(PairingRequest())

        assert session.hub.queue_size == 4
        await registry.close()


class TestLookup:
    """Tests for get/require/list_all."""

    def test_require_unknown_raises(self, registry):
        """Unknown ids raise SessionNotFound."""
        with pytest.raises(SessionNotFound):
            registry.require("missing")
        assert registry.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_all(self, registry):
        """All registered sessions are listed."""
        first, _ = await registry.create(PairingRequest())
        second, _ = await registry.create(PairingRequest())

        assert {s.session_id for s in registry.list_all()} == {
            first.session_id,
            second.session_id,
        }
        await registry.close()


class TestRetirement:
    """Tests for abort and retirement of finished sessions."""

    @pytest.mark.asyncio
    async def test_abort_removes_immediately_without_retention(self, registry):
        """With retain_terminal=0 finished sessions leave the registry."""
        session, _ = await registry.create(PairingRequest())

        await registry.abort(session.session_id)

        assert session.is_terminal
        assert session.session_id not in registry
        assert session.hub.closed

    @pytest.mark.asyncio
    async def test_abort_unknown_raises(self, registry):
        """Aborting an unknown id raises SessionNotFound."""
        with pytest.raises(SessionNotFound):
            await registry.abort("missing")

    @pytest.mark.asyncio
    async def test_terminal_session_retained_then_retired(self, factory, store, config):
        """Finished sessions stay visible for the retention window."""
        config.pairing.retain_terminal = 0.05
        registry = SessionRegistry(factory, store, config)
        session, _ = await registry.create(PairingRequest())

        factory.latest.push(CloseEvent(401))
        await session.wait_closed(timeout=1.0)

        assert session.session_id in registry
        assert registry.require(session.session_id).is_terminal
        await wait_until(lambda: session.session_id not in registry)

    @pytest.mark.asyncio
    async def test_close_aborts_everything(self, registry, factory):
        """Closing the registry aborts every lineage."""
        first, _ = await registry.create(PairingRequest())
        second, _ = await registry.create(PairingRequest())

        await registry.close()

        assert first.is_terminal and second.is_terminal
        assert len(registry) == 0
        assert all(provider.closed for provider in factory.providers)

    @pytest.mark.asyncio
    async def test_close_during_start(self, registry, factory):
        """Shutdown while a provider is starting fails that start cleanly."""
        gate = asyncio.Event()
        factory.provider_kwargs = {"begin_gate": gate}
        creating = asyncio.create_task(registry.create(PairingRequest()))
        await wait_until(lambda: factory.providers and factory.latest.begin_calls)

        await registry.close()
        gate.set()

        with pytest.raises(ProviderUnavailable):
            await creating
        assert factory.latest.closed
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_remove_cancels_pending_retirement(self, factory, store, config):
        """Explicit removal cancels the retirement timer."""
        config.pairing.retain_terminal = 60.0
        registry = SessionRegistry(factory, store, config)
        session, _ = await registry.create(PairingRequest())
        await registry.abort(session.session_id)

        assert registry.remove(session.session_id) is session
        assert registry.remove(session.session_id) is None
