"""Pairing module for qrlink.

Provides the device-linking lifecycle including:
- Reconnect policy for closed connection attempts
- QR/status fan-out to observers
- Exactly-once credential capture
- Pairing session state machine and registry
"""

from .capture import CaptureLedger, CaptureResult, CredentialCapture
from .hub import BroadcastHub, HubEvent, Subscription
from .policy import Decision, ReconnectAction, ReconnectPolicy
from .qr_render import QrRenderer
from .registry import SessionRegistry
from .session import PairingRequest, PairingSession, PairingState, StartResult

__all__ = [
    "BroadcastHub",
    "CaptureLedger",
    "CaptureResult",
    "CredentialCapture",
    "Decision",
    "HubEvent",
    "PairingRequest",
    "PairingSession",
    "PairingState",
    "QrRenderer",
    "ReconnectAction",
    "ReconnectPolicy",
    "SessionRegistry",
    "StartResult",
    "Subscription",
]
