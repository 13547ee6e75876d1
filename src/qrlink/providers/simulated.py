"""Simulated link provider for local runs and demos.

Emits rotating QR payloads, pretends a phone scanned one of them, writes
generated credential material through the credential handle and opens the
connection. Sent payloads are kept in ``outbox`` instead of leaving the
process.
"""

import asyncio
import base64
import logging
import secrets
from typing import AsyncIterator, Optional, Union

from qrlink.pairing.codec import deserialize_fields, serialize_fields
from qrlink.provider import (
    CloseEvent,
    CredentialBundle,
    CredentialHandle,
    DeliveryReceipt,
    Document,
    MessageEvent,
    OpenEvent,
    ProviderEvent,
    QrEvent,
    TextMessage,
)

logger = logging.getLogger(__name__)

# No ambiguous chars (0O1I)
PAIRING_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PAIRING_CODE_LENGTH = 8

# Status code for "QR refs exhausted"
QR_TIMEOUT_CODE = 408

_STOP = object()


def _random_code() -> str:
    return "".join(secrets.choice(PAIRING_CODE_ALPHABET) for _ in range(PAIRING_CODE_LENGTH))


def _key_pair() -> dict[str, bytes]:
    return {"private": secrets.token_bytes(32), "public": secrets.token_bytes(32)}


class SimulatedLinkProvider:
    """In-process stand-in for a real linking handshake."""

    def __init__(
        self,
        credentials: CredentialHandle,
        qr_interval: float = 20.0,
        qr_count: int = 5,
        scan_after: Optional[int] = 2,
        account: str = "10000000000",
    ):
        """Initialize provider.

        Args:
            credentials: Handle for persisted credential material.
            qr_interval: Seconds between QR rotations.
            qr_count: QR payloads emitted before the attempt times out.
            scan_after: Number of QRs shown before the simulated scan, or
                None to never scan.
            account: Phone number of the simulated account.
        """
        self._credentials = credentials
        self._qr_interval = qr_interval
        self._qr_count = qr_count
        self._scan_after = scan_after
        self._account = account
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._fields = self._load_fields(credentials.initial)
        self.outbox: list[tuple[str, Union[Document, TextMessage]]] = []

    @staticmethod
    def _load_fields(blob: Optional[bytes]) -> Optional[dict]:
        if blob is None:
            return None
        try:
            return deserialize_fields(blob)
        except ValueError as e:
            logger.warning(f"Ignoring unreadable stored credentials: {e}")
            return None

    @property
    def registered(self) -> bool:
        return bool(self._fields and self._fields.get("registered"))

    @property
    def jid(self) -> str:
        return f"{self._account}@s.whatsapp.net"

    async def begin_link(self, identifier: Optional[str] = None) -> Optional[str]:
        if self._closed:
            raise RuntimeError("Connection Closed")
        if identifier is None:
            return None
        self._account = identifier
        code = _random_code()
        logger.debug(f"Simulated pairing code issued for {identifier[-4:]}")
        return code

    async def events(self) -> AsyncIterator[ProviderEvent]:
        if self._fields is None:
            scanned = False
            for index in range(self._qr_count):
                if self._closed:
                    return
                yield QrEvent(self._qr_payload())
                if self._scan_after is not None and index + 1 >= self._scan_after:
                    scanned = True
                    break
                await asyncio.sleep(self._qr_interval)

            if not scanned:
                yield CloseEvent(QR_TIMEOUT_CODE)
                return

            self._fields = self._generate_fields()
            await self._credentials.save(serialize_fields(self._fields))

        yield OpenEvent(CredentialBundle(fields=self._fields, target_identity=self.jid))

        while not self._closed:
            item = await self._inbox.get()
            if item is _STOP:
                return
            yield item

    def inject_message(self, sender: str, text: str) -> None:
        """Deliver an inbound chat message on the open connection."""
        self._inbox.put_nowait(MessageEvent(sender=sender, text=text))

    async def send(self, target: str, payload: Union[Document, TextMessage]) -> DeliveryReceipt:
        if self._closed:
            raise RuntimeError("Connection Closed")
        self.outbox.append((target, payload))
        message_id = secrets.token_hex(8).upper()
        logger.info(f"Simulated send {type(payload).__name__} to {target} ({message_id})")
        return DeliveryReceipt(message_id=message_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(_STOP)

    def _qr_payload(self) -> str:
        ref = secrets.token_urlsafe(24)
        keys = ",".join(base64.b64encode(secrets.token_bytes(32)).decode("ascii") for _ in range(3))
        return f"2@{ref},{keys}"

    def _generate_fields(self) -> dict:
        return {
            "noiseKey": _key_pair(),
            "signedIdentityKey": _key_pair(),
            "signedPreKey": {
                "keyPair": _key_pair(),
                "signature": secrets.token_bytes(64),
                "keyId": 1,
            },
            "registrationId": secrets.randbelow(16380) + 1,
            "advSecretKey": base64.b64encode(secrets.token_bytes(32)).decode("ascii"),
            "me": {"id": self.jid, "name": "qrlink"},
            "registered": True,
        }


def create_provider(credentials: CredentialHandle) -> SimulatedLinkProvider:
    """Default provider factory for ``qrlink serve``."""
    return SimulatedLinkProvider(credentials, qr_interval=10.0, qr_count=6, scan_after=3)
