"""Base exceptions for qrlink."""


class QrlinkError(Exception):
    """Base exception for all qrlink errors."""

    pass


class ConfigError(QrlinkError):
    """Configuration value is invalid."""

    pass


class StorageError(QrlinkError):
    """Session store operation error."""

    pass


class ProviderUnavailable(QrlinkError):
    """Link provider could not be constructed or refused to start linking.

    Fatal to the single start request that triggered it.
    """

    pass


class InvalidIdentifier(QrlinkError):
    """Target identifier has no digits after normalization."""

    pass


class PairingInProgress(QrlinkError):
    """A non-terminal lineage already exists for this identifier."""

    pass


class TooManySessions(QrlinkError):
    """Registry is at its concurrent lineage limit."""

    pass


class SessionNotFound(QrlinkError):
    """No lineage with the given id."""

    pass


class CaptureError(QrlinkError):
    """Credential capture failed."""

    pass


class IncompleteCredential(CaptureError):
    """Required credential fields are still missing after the bounded wait."""

    def __init__(self, missing: list[str]):
        super().__init__(f"Credential bundle incomplete, missing: {', '.join(missing)}")
        self.missing = missing


class UnencodableCredential(CaptureError):
    """Credential fields hold values the artifact codec cannot carry."""

    pass


class DeliveryFailed(CaptureError):
    """The provider's send primitive errored."""

    pass


class DisconnectError(QrlinkError):
    """A provider connection attempt closed."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RetryableDisconnect(DisconnectError):
    """Disconnect that schedules a restart of the lineage."""

    pass


class TerminalDisconnect(DisconnectError):
    """Disconnect that ends the lineage."""

    pass
