"""Credential capture: validate, serialize and deliver exactly once.

The captured bundle is checked for completeness, serialized with the
canonical codec into a ``creds.json`` document, sent to the linked account
through the provider, and the staged copy is cleared from the session store.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from qrlink.errors import (
    DeliveryFailed,
    IncompleteCredential,
    StorageError,
    UnencodableCredential,
)
from qrlink.pairing.codec import serialize_fields
from qrlink.provider import CredentialBundle, DeliveryReceipt, Document, LinkProvider
from qrlink.session_store import SessionStore

logger = logging.getLogger(__name__)

ARTIFACT_FILE_NAME = "creds.json"
ARTIFACT_MIMETYPE = "application/json"

# Fields every bundle must carry unless the provider declares its own schema
DEFAULT_REQUIRED_FIELDS = (
    "noiseKey",
    "signedIdentityKey",
    "signedPreKey",
    "registrationId",
    "advSecretKey",
    "me",
)

BundleRefresher = Callable[[], Awaitable[Optional[CredentialBundle]]]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (bytes, bytearray, str, Mapping, list, tuple)):
        return len(value) == 0
    return False


def target_from_fields(fields: Mapping[str, Any]) -> Optional[str]:
    """Account id recorded in the credential fields (``me.id``), if any."""
    me = fields.get("me")
    if isinstance(me, Mapping):
        identity = me.get("id")
        if isinstance(identity, str) and identity:
            return identity
    return None


def missing_fields(fields: Mapping[str, Any], required: Iterable[str]) -> list[str]:
    """Required fields that are absent or empty."""
    return [name for name in required if _is_empty(fields.get(name))]


class CaptureLedger:
    """Per-lineage record of a successful delivery.

    ``captured`` only ever goes from False to True.
    """

    def __init__(self) -> None:
        self._captured = False
        self.receipt: Optional[DeliveryReceipt] = None

    @property
    def captured(self) -> bool:
        return self._captured

    def mark_captured(self, receipt: DeliveryReceipt) -> None:
        self._captured = True
        self.receipt = receipt


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of a capture call."""

    delivered: bool
    receipt: Optional[DeliveryReceipt] = None
    artifact_size: int = 0
    already_captured: bool = False


class CredentialCapture:
    """Turns a credential bundle into a delivered artifact, once per lineage."""

    def __init__(
        self,
        store: SessionStore,
        required_fields: Iterable[str] = DEFAULT_REQUIRED_FIELDS,
        recheck_delay: float = 2.0,
        settle_delay: float = 0.0,
        clear_after_delivery: bool = True,
    ):
        """Initialize capture.

        Args:
            store: Staging store cleared after delivery.
            required_fields: Field names that must be present and non-empty.
            recheck_delay: Wait before the single completeness re-check.
            settle_delay: Wait before the first completeness check.
            clear_after_delivery: Remove the staged copy once delivered.
        """
        self._store = store
        self._required = tuple(required_fields)
        self._recheck_delay = recheck_delay
        self._settle_delay = settle_delay
        self._clear_after_delivery = clear_after_delivery

    async def capture(
        self,
        lineage_id: str,
        ledger: CaptureLedger,
        bundle: Optional[CredentialBundle],
        target_identity: Optional[str],
        provider: LinkProvider,
        refresh: Optional[BundleRefresher] = None,
    ) -> CaptureResult:
        """Validate, serialize and deliver a credential bundle.

        Args:
            lineage_id: Lineage whose staging copy is cleared on success.
            ledger: The lineage's delivery record.
            bundle: Bundle from the open event, possibly incomplete.
            target_identity: Account that receives the artifact. Falls back
                to the bundle's own target identity.
            provider: Provider whose ``send`` delivers the artifact.
            refresh: Optional callable returning a fresher bundle for the
                re-check (e.g. re-read from the session store).

        Returns:
            CaptureResult; ``already_captured`` is set when the ledger was
            already marked and nothing was sent.

        Raises:
            IncompleteCredential: Required fields still missing after the re-check.
            UnencodableCredential: A field value has no artifact encoding.
            DeliveryFailed: The send primitive errored.
        """
        if ledger.captured:
            logger.debug(f"Capture skipped for {lineage_id[:8]}..., already delivered")
            return CaptureResult(delivered=False, receipt=ledger.receipt, already_captured=True)

        if self._settle_delay:
            await asyncio.sleep(self._settle_delay)

        bundle = await self._complete_bundle(lineage_id, bundle, refresh)
        target = target_identity or bundle.target_identity or target_from_fields(bundle.fields)
        if not target:
            raise IncompleteCredential(["target_identity"])

        try:
            artifact = serialize_fields(bundle.fields)
        except (TypeError, ValueError) as e:
            raise UnencodableCredential(f"Credential fields cannot be encoded: {e}") from e

        document = Document(
            data=artifact,
            file_name=ARTIFACT_FILE_NAME,
            mimetype=ARTIFACT_MIMETYPE,
        )

        try:
            receipt = await provider.send(target, document)
        except Exception as e:
            logger.error(f"Credential delivery failed for {lineage_id[:8]}...: {e}")
            raise DeliveryFailed(f"Send failed: {type(e).__name__}") from e

        ledger.mark_captured(receipt)
        logger.info(f"Credentials delivered for {lineage_id[:8]}... ({len(artifact)} bytes)")

        if self._clear_after_delivery:
            try:
                await self._store.clear(lineage_id)
            except StorageError as e:
                logger.error(f"Failed to clear staged credentials for {lineage_id[:8]}...: {e}")

        return CaptureResult(delivered=True, receipt=receipt, artifact_size=len(artifact))

    async def _complete_bundle(
        self,
        lineage_id: str,
        bundle: Optional[CredentialBundle],
        refresh: Optional[BundleRefresher],
    ) -> CredentialBundle:
        missing = self._missing(bundle)
        if not missing:
            return bundle

        logger.info(
            f"Credentials for {lineage_id[:8]}... incomplete ({', '.join(missing)}), "
            f"re-checking in {self._recheck_delay}s"
        )
        await asyncio.sleep(self._recheck_delay)

        if refresh is not None:
            refreshed = await refresh()
            if refreshed is not None:
                bundle = refreshed

        missing = self._missing(bundle)
        if missing:
            raise IncompleteCredential(missing)
        return bundle

    def _missing(self, bundle: Optional[CredentialBundle]) -> list[str]:
        if bundle is None:
            return list(self._required) or ["fields"]
        return missing_fields(bundle.fields, self._required)
