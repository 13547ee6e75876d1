"""Registry of live pairing lineages.

Each lineage is an independently owned PairingSession keyed by its
session id. Lineages for different identifiers run in parallel; a second
request for an identifier whose lineage is still running is rejected.
"""

import asyncio
import logging
from typing import Optional

from qrlink.config import Config
from qrlink.errors import (
    PairingInProgress,
    ProviderUnavailable,
    SessionNotFound,
    TooManySessions,
)
from qrlink.pairing.capture import CredentialCapture
from qrlink.pairing.hub import BroadcastHub
from qrlink.pairing.policy import ReconnectPolicy
from qrlink.pairing.session import (
    PairingRequest,
    PairingSession,
    StartResult,
    normalize_identifier,
)
from qrlink.provider import ProviderFactory
from qrlink.session_store import SessionStore

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Creates, tracks and retires pairing sessions."""

    def __init__(
        self,
        provider_factory: ProviderFactory,
        store: SessionStore,
        config: Optional[Config] = None,
        capture: Optional[CredentialCapture] = None,
        policy: Optional[ReconnectPolicy] = None,
    ):
        """Initialize registry.

        Args:
            provider_factory: Builds a link provider per connection attempt.
            store: Credential staging store shared by all lineages.
            config: Service configuration (defaults if omitted).
            capture: Optional injected capture (for testing).
            policy: Optional injected reconnect policy (for testing).
        """
        self.config = config or Config()
        self._factory = provider_factory
        self._store = store
        self._capture = capture or CredentialCapture(
            store,
            recheck_delay=self.config.capture.recheck_delay,
            settle_delay=self.config.capture.settle_delay,
            clear_after_delivery=self.config.capture.clear_after_delivery,
        )
        self._policy = policy or ReconnectPolicy(
            base_delay=self.config.reconnect.base_delay,
            max_delay=self.config.reconnect.max_delay,
        )
        self._sessions: dict[str, PairingSession] = {}
        self._retire_handles: dict[str, asyncio.TimerHandle] = {}

    async def create(self, request: PairingRequest) -> tuple[PairingSession, StartResult]:
        """Create a lineage and start it.

        Raises:
            InvalidIdentifier: If the identifier has no digits.
            PairingInProgress: If a running lineage already uses the identifier.
            TooManySessions: If the registry is full.
            ProviderUnavailable: If the lineage could not start.
        """
        identifier = normalize_identifier(request.identifier)
        active = [s for s in self._sessions.values() if not s.is_terminal]

        if identifier is not None:
            for session in active:
                if session.identifier == identifier:
                    raise PairingInProgress(
                        f"Pairing already running for this number ({session.session_id[:8]}...)"
                    )

        if len(active) >= self.config.pairing.max_sessions:
            raise TooManySessions("Too many pairing sessions")

        session = PairingSession(
            provider_factory=self._factory,
            store=self._store,
            capture=self._capture,
            policy=self._policy,
            hub=BroadcastHub(queue_size=self.config.pairing.queue_size),
            liveness=self.config.liveness,
            on_terminal=self._on_terminal,
        )
        self._sessions[session.session_id] = session

        try:
            result = await session.start(PairingRequest(identifier=identifier))
        except ProviderUnavailable:
            self.remove(session.session_id)
            raise
        return session, result

    def get(self, session_id: str) -> Optional[PairingSession]:
        """Get session by ID."""
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> PairingSession:
        """Get session by ID.

        Raises:
            SessionNotFound: If no such session exists.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound("Session not found")
        return session

    def remove(self, session_id: str) -> Optional[PairingSession]:
        """Remove and dispose a session."""
        handle = self._retire_handles.pop(session_id, None)
        if handle is not None:
            handle.cancel()
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.dispose()
        return session

    async def abort(self, session_id: str) -> PairingSession:
        """Abort a lineage (cancels pending retries).

        Raises:
            SessionNotFound: If no such session exists.
        """
        session = self.require(session_id)
        await session.abort()
        return session

    def list_all(self) -> list[PairingSession]:
        """Get list of all sessions."""
        return list(self._sessions.values())

    async def close(self) -> None:
        """Abort every lineage and empty the registry."""
        for session in list(self._sessions.values()):
            await session.abort()
        for session_id in list(self._sessions):
            self.remove(session_id)
        logger.info("Session registry closed")

    def _on_terminal(self, session: PairingSession) -> None:
        """Retire a finished session after the retention window."""
        if session.session_id not in self._sessions:
            return
        retain = self.config.pairing.retain_terminal
        if retain <= 0:
            self.remove(session.session_id)
            return
        loop = asyncio.get_running_loop()
        self._retire_handles[session.session_id] = loop.call_later(
            retain, self.remove, session.session_id
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
