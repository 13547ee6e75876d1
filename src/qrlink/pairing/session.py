"""Pairing session state machine.

A PairingSession owns one linking lineage: it builds the link provider,
consumes the provider's event stream on a single task, publishes QR/status
updates to its BroadcastHub, runs credential capture once the connection
opens, and restarts itself on retryable disconnects through a cancellable
timer.
"""

import asyncio
import inspect
import logging
import re
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from qrlink.config import LivenessConfig
from qrlink.errors import (
    DeliveryFailed,
    DisconnectError,
    IncompleteCredential,
    InvalidIdentifier,
    ProviderUnavailable,
    StorageError,
    TerminalDisconnect,
    UnencodableCredential,
)
from qrlink.pairing.capture import CaptureLedger, CredentialCapture, target_from_fields
from qrlink.pairing.codec import deserialize_fields
from qrlink.pairing.hub import BroadcastHub, HubEvent
from qrlink.pairing.policy import ReconnectPolicy, classify_error, normalize_reason
from qrlink.provider import (
    CloseEvent,
    CredentialBundle,
    LinkProvider,
    MessageEvent,
    OpenEvent,
    ProviderEvent,
    ProviderFactory,
    QrEvent,
    TextMessage,
)
from qrlink.session_store import SessionStore, StoreCredentialHandle

logger = logging.getLogger(__name__)

ABORTED_REASON = "aborted"
STREAM_ENDED_REASON = "connection-closed"
PROVIDER_UNAVAILABLE_REASON = "provider-unavailable"


class PairingState(Enum):
    """Lineage states. Values double as the observer status strings."""

    INIT = "init"
    AWAITING_QR = "awaiting-qr"
    AWAITING_CODE = "awaiting-code"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED_RETRYING = "closed-retrying"
    CLOSED_TERMINAL = "closed-terminal"


VALID_TRANSITIONS = {
    PairingState.INIT: {
        PairingState.CONNECTING,
        PairingState.AWAITING_CODE,
        PairingState.CLOSED_TERMINAL,
    },
    PairingState.CONNECTING: {
        PairingState.AWAITING_QR,
        PairingState.AWAITING_CODE,
        PairingState.OPEN,
        PairingState.CLOSED_RETRYING,
        PairingState.CLOSED_TERMINAL,
    },
    PairingState.AWAITING_QR: {
        PairingState.OPEN,
        PairingState.CLOSED_RETRYING,
        PairingState.CLOSED_TERMINAL,
    },
    PairingState.AWAITING_CODE: {
        PairingState.AWAITING_QR,
        PairingState.OPEN,
        PairingState.CLOSED_RETRYING,
        PairingState.CLOSED_TERMINAL,
    },
    PairingState.OPEN: {
        PairingState.CLOSED_RETRYING,
        PairingState.CLOSED_TERMINAL,
    },
    PairingState.CLOSED_RETRYING: {
        PairingState.CONNECTING,
        PairingState.AWAITING_CODE,
        PairingState.CLOSED_TERMINAL,
    },
    PairingState.CLOSED_TERMINAL: set(),
}


def normalize_identifier(raw: Optional[str]) -> Optional[str]:
    """Strip everything but digits from a phone-number-like identifier.

    Raises:
        InvalidIdentifier: If ``raw`` is given but contains no digits.
    """
    if raw is None:
        return None
    digits = re.sub(r"[^0-9]", "", str(raw))
    if not digits:
        raise InvalidIdentifier("Identifier must contain digits")
    return digits


@dataclass(frozen=True)
class PairingRequest:
    """Operator request to begin pairing.

    An identifier selects code pairing; without one the lineage uses QR
    pairing.
    """

    identifier: Optional[str] = None

    @property
    def wants_code(self) -> bool:
        return self.identifier is not None


@dataclass(frozen=True)
class StartResult:
    """Either a pairing code or an acknowledgment that QR events follow."""

    session_id: str
    pairing_code: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        return self.pairing_code is None


class PairingSession:
    """Single authority over one linking lineage.

    Attributes:
        session_id: Lineage id, stable across internal reconnects.
        state: Current PairingState.
        current_qr: Latest QR payload, only set while AWAITING_QR.
        attempt_count: Retries scheduled since creation, drives backoff.
        identifier: Digits-only identifier for code pairing, or None.
        pairing_code: Last code returned by the provider.
        last_close_reason: Canonical reason of the most recent close.
        last_error: Coarse label of the last capture failure.
    """

    def __init__(
        self,
        provider_factory: ProviderFactory,
        store: SessionStore,
        capture: CredentialCapture,
        policy: ReconnectPolicy,
        hub: Optional[BroadcastHub] = None,
        liveness: Optional[LivenessConfig] = None,
        session_id: Optional[str] = None,
        on_terminal: Optional[Callable[["PairingSession"], Any]] = None,
    ):
        self.session_id = session_id or secrets.token_hex(16)
        self.state = PairingState.INIT
        self.current_qr: Optional[str] = None
        self.attempt_count = 0
        self.identifier: Optional[str] = None
        self.pairing_code: Optional[str] = None
        self.last_close_reason: Optional[str] = None
        self.last_error: Optional[str] = None
        self.next_retry_delay: Optional[float] = None
        self.created_at = time.time()

        self.hub = hub or BroadcastHub()
        self.ledger = CaptureLedger()

        self._factory = provider_factory
        self._store = store
        self._capture = capture
        self._policy = policy
        self._liveness = liveness or LivenessConfig()
        self._on_terminal = on_terminal

        self._provider: Optional[LinkProvider] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._terminal = asyncio.Event()

    @property
    def captured_once(self) -> bool:
        return self.ledger.captured

    @property
    def is_terminal(self) -> bool:
        return self.state is PairingState.CLOSED_TERMINAL

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    # =========================================================================
    # Operations
    # =========================================================================

    async def start(self, request: PairingRequest) -> StartResult:
        """Begin linking.

        Returns as soon as the provider accepted the request; QR and status
        updates follow on the hub.

        Raises:
            InvalidIdentifier: If the identifier has no digits.
            ProviderUnavailable: If the provider cannot be built or refused
                to begin linking. The lineage ends in CLOSED_TERMINAL.
                Also raised when the lineage is aborted before the provider
                finished starting.
        """
        if self.state is not PairingState.INIT:
            raise RuntimeError(f"Session {self.session_id[:8]}... already started")

        self.identifier = normalize_identifier(request.identifier)

        try:
            code = await self._connect()
        except ProviderUnavailable as e:
            logger.error(f"Pairing start failed for {self.session_id[:8]}...: {e}")
            if not self.is_terminal:
                self.last_close_reason = PROVIDER_UNAVAILABLE_REASON
                await self._finish_terminal()
            raise

        logger.info(
            f"Pairing session started: {self.session_id[:8]}... "
            f"({'code' if code else 'qr'})"
        )
        return StartResult(session_id=self.session_id, pairing_code=code)

    async def abort(self) -> None:
        """Stop the lineage now, cancelling any pending retry. Idempotent."""
        if self.is_terminal:
            return

        logger.info(f"Pairing session aborted: {self.session_id[:8]}...")
        self.last_close_reason = ABORTED_REASON
        self._cancel_retry()

        current = asyncio.current_task()
        for task in (self._restart_task, self._stream_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug(f"Task ended with error during abort: {e}")

        await self._finish_terminal()

    async def wait_closed(self, timeout: Optional[float] = None) -> None:
        """Wait until the lineage reaches CLOSED_TERMINAL."""
        await asyncio.wait_for(self._terminal.wait(), timeout=timeout)

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe view of the session's public state."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "qr": self.current_qr,
            "pairing_code": self.pairing_code,
            "attempt_count": self.attempt_count,
            "captured": self.captured_once,
            "last_close_reason": self.last_close_reason,
            "next_retry_delay": self.next_retry_delay if self.retry_pending else None,
            "created_at": self.created_at,
        }

    def dispose(self) -> None:
        """Release observers once the lineage is finished."""
        self.hub.close()

    # =========================================================================
    # Connection attempts
    # =========================================================================

    async def _build_provider(self) -> LinkProvider:
        try:
            handle = await StoreCredentialHandle.open(self._store, self.session_id)
            provider = self._factory(handle)
            if inspect.isawaitable(provider):
                provider = await provider
        except Exception as e:
            raise ProviderUnavailable(f"Cannot construct link provider: {e}") from e
        return provider

    async def _connect(self) -> Optional[str]:
        """Build a provider, begin linking and start consuming its events."""
        provider = await self._build_provider()

        code: Optional[str] = None
        try:
            if self.identifier is not None and not provider.registered:
                code = await provider.begin_link(self.identifier)
            else:
                await provider.begin_link(None)
        except asyncio.CancelledError:
            await self._close_provider(provider)
            raise
        except Exception as e:
            await self._close_provider(provider)
            raise ProviderUnavailable(f"Provider refused to begin linking: {e}") from e

        if self.is_terminal:
            # Aborted while the provider was starting up
            await self._close_provider(provider)
            raise ProviderUnavailable("Pairing session was aborted during start")

        self._provider = provider
        if code:
            self.pairing_code = code
            self._transition(PairingState.AWAITING_CODE)
        else:
            self._transition(PairingState.CONNECTING)

        self._stream_task = asyncio.create_task(self._consume(provider))
        return code

    async def _consume(self, provider: LinkProvider) -> None:
        """Feed provider events into the state machine, one at a time."""
        try:
            async for event in provider.events():
                if self._provider is not provider:
                    return
                await self._on_provider_event(event)
                if isinstance(event, CloseEvent) or self.is_terminal:
                    return
        except asyncio.CancelledError:
            raise
        except TerminalDisconnect as e:
            logger.info(f"Provider ended {self.session_id[:8]}...: {e.reason}")
            if self._provider is provider:
                self.last_close_reason = normalize_reason(e.reason)
                await self._finish_terminal()
            return
        except Exception as e:
            reason = e.reason if isinstance(e, DisconnectError) else classify_error(e)
            logger.warning(
                f"Provider stream error for {self.session_id[:8]}...: "
                f"{type(e).__name__} ({reason})"
            )
            if self._provider is provider:
                await self._handle_close(reason)
            return

        if self._provider is provider and not self.is_terminal:
            await self._handle_close(STREAM_ENDED_REASON)

    async def _on_provider_event(self, event: ProviderEvent) -> None:
        if isinstance(event, QrEvent):
            self._on_qr(event.qr)
        elif isinstance(event, OpenEvent):
            await self._on_open(event)
        elif isinstance(event, CloseEvent):
            await self._handle_close(event.reason)
        elif isinstance(event, MessageEvent):
            await self._on_message(event)
        else:
            logger.debug(f"Ignoring unknown provider event {type(event).__name__}")

    def _on_qr(self, qr: str) -> None:
        self.current_qr = qr
        self._transition(PairingState.AWAITING_QR)
        self.hub.publish(HubEvent.qr(qr))

    async def _on_open(self, event: OpenEvent) -> None:
        self._transition(PairingState.OPEN)
        logger.info(f"Connection open for {self.session_id[:8]}...")

        if self.ledger.captured:
            logger.debug(f"Duplicate open for {self.session_id[:8]}..., already captured")
            return

        bundle = event.bundle
        try:
            await self._capture.capture(
                self.session_id,
                self.ledger,
                bundle,
                bundle.target_identity if bundle else None,
                self._provider,
                refresh=self._reload_bundle,
            )
            self.last_error = None
        except IncompleteCredential as e:
            self.last_error = "incomplete-credential"
            logger.error(f"Capture failed for {self.session_id[:8]}...: {e}")
        except DeliveryFailed as e:
            self.last_error = "delivery-failed"
            logger.error(f"Capture failed for {self.session_id[:8]}...: {e}")
        except UnencodableCredential as e:
            self.last_error = "unencodable-credential"
            logger.error(f"Capture failed for {self.session_id[:8]}...: {e}")

    async def _on_message(self, event: MessageEvent) -> None:
        if self.state is not PairingState.OPEN or self._provider is None:
            return
        if event.text.strip().lower() != self._liveness.command.strip().lower():
            return
        try:
            await self._provider.send(event.sender, TextMessage(self._liveness.reply))
        except Exception as e:
            logger.warning(f"Liveness reply failed for {self.session_id[:8]}...: {e}")

    async def _reload_bundle(self) -> Optional[CredentialBundle]:
        """Re-read staged credentials for the capture re-check."""
        try:
            blob = await self._store.load(self.session_id)
        except StorageError as e:
            logger.warning(f"Staged credentials unavailable for {self.session_id[:8]}...: {e}")
            return None
        if blob is None:
            return None
        try:
            fields = deserialize_fields(blob)
        except ValueError as e:
            logger.warning(f"Staged credentials unreadable for {self.session_id[:8]}...: {e}")
            return None
        return CredentialBundle(fields=fields, target_identity=target_from_fields(fields) or "")

    # =========================================================================
    # Disconnects
    # =========================================================================

    async def _handle_close(self, raw_reason: Any) -> None:
        reason = normalize_reason(raw_reason)
        self.last_close_reason = reason

        provider, self._provider = self._provider, None
        if provider is not None:
            await self._close_provider(provider)

        decision = self._policy.decide(reason, self.attempt_count)
        if not decision.should_retry:
            logger.info(f"Pairing session {self.session_id[:8]}... closed: {reason}")
            await self._finish_terminal()
            return

        self._transition(PairingState.CLOSED_RETRYING)
        self.attempt_count += 1
        self.next_retry_delay = decision.delay
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(decision.delay, self._fire_restart)
        logger.info(
            f"Pairing session {self.session_id[:8]}... closed ({reason}), "
            f"retry {self.attempt_count} in {decision.delay:.1f}s"
        )

    def _fire_restart(self) -> None:
        self._retry_handle = None
        self._restart_task = asyncio.ensure_future(self._restart())

    async def _restart(self) -> None:
        if self.state is not PairingState.CLOSED_RETRYING:
            return
        try:
            await self._connect()
        except ProviderUnavailable as e:
            logger.error(f"Restart failed for {self.session_id[:8]}...: {e}")
            self.last_close_reason = PROVIDER_UNAVAILABLE_REASON
            await self._finish_terminal()

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def _finish_terminal(self) -> None:
        if self.is_terminal:
            return

        self._cancel_retry()
        self._transition(PairingState.CLOSED_TERMINAL)

        provider, self._provider = self._provider, None
        if provider is not None:
            await self._close_provider(provider)

        try:
            await self._store.clear(self.session_id)
        except Exception as e:
            logger.error(f"Failed to clear staged credentials for {self.session_id[:8]}...: {e}")

        self._terminal.set()
        if self._on_terminal is not None:
            self._on_terminal(self)

    async def _close_provider(self, provider: LinkProvider) -> None:
        try:
            await provider.close()
        except Exception as e:
            logger.warning(f"Error closing provider for {self.session_id[:8]}...: {e}")

    # =========================================================================
    # State
    # =========================================================================

    def _transition(self, new_state: PairingState) -> None:
        """Move to ``new_state`` and publish the status.

        Raises:
            ValueError: If the transition is not valid from the current state.
        """
        if new_state is not self.state:
            if new_state not in VALID_TRANSITIONS[self.state]:
                raise ValueError(f"Invalid transition: {self.state} -> {new_state}")
            self.state = new_state

        if new_state is not PairingState.AWAITING_QR:
            self.current_qr = None
        self.hub.publish(HubEvent.status(new_state.value))
