"""Link provider contract.

The provider implements the account-linking handshake and the message send
primitive. The pairing core only sees the types in this module: a factory
that builds a provider around a credential handle, an async stream of
provider events, and ``send``.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, Protocol, Union


@dataclass
class CredentialBundle:
    """Credential material produced once linking succeeds.

    Attributes:
        fields: Named credential keys. Values are bytes, strings, numbers,
            or nested mappings/lists of those.
        target_identity: Account that receives the serialized artifact.
    """

    fields: Mapping[str, Any]
    target_identity: str


@dataclass(frozen=True)
class QrEvent:
    """A new QR payload to display."""

    qr: str


@dataclass(frozen=True)
class OpenEvent:
    """Connection attempt reached the open state."""

    bundle: Optional[CredentialBundle] = None


@dataclass(frozen=True)
class CloseEvent:
    """Connection attempt closed.

    ``reason`` is either a provider status code or a reason string; it is
    normalized by the reconnect policy.
    """

    reason: Union[int, str, None] = None


@dataclass(frozen=True)
class MessageEvent:
    """Inbound chat message on an open connection."""

    sender: str
    text: str


ProviderEvent = Union[QrEvent, OpenEvent, CloseEvent, MessageEvent]


@dataclass(frozen=True)
class Document:
    """Binary attachment payload."""

    data: bytes
    file_name: str
    mimetype: str = "application/octet-stream"


@dataclass(frozen=True)
class TextMessage:
    """Plain text payload."""

    text: str


@dataclass(frozen=True)
class DeliveryReceipt:
    """Provider acknowledgment of a sent payload."""

    message_id: str
    extra: dict[str, Any] = field(default_factory=dict)


class CredentialHandle(Protocol):
    """Persisted credential material for one lineage."""

    @property
    def initial(self) -> Optional[bytes]:
        """Blob loaded from the session store when the provider was built."""
        ...

    async def save(self, blob: bytes) -> None:
        """Persist updated credential material."""
        ...


class LinkProvider(Protocol):
    """Protocol for the external linking handshake."""

    @property
    def registered(self) -> bool:
        """True if the device is already registered with the account."""
        ...

    async def begin_link(self, identifier: Optional[str] = None) -> Optional[str]:
        """Start linking; returns a pairing code when identifier is given."""
        ...

    def events(self) -> AsyncIterator[ProviderEvent]:
        """Ordered event stream for the current connection attempt."""
        ...

    async def send(self, target: str, payload: Union[Document, TextMessage]) -> DeliveryReceipt:
        """Send a payload to an account."""
        ...

    async def close(self) -> None:
        """Release the connection."""
        ...


ProviderFactory = Callable[[CredentialHandle], Union[LinkProvider, Awaitable[LinkProvider]]]
