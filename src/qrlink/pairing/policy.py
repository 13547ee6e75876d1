"""Reconnect decisions for closed connection attempts.

``decide`` is a pure function of the close reason and the attempt count.
Provider status codes and free-form error text are first mapped to a small
set of canonical reason names by ``normalize_reason`` / ``classify_error``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Union

# Canonical reasons that end a lineage
TERMINAL_REASONS = frozenset({"logged-out", "unauthorized", "replaced"})

UNKNOWN_REASON = "unknown"

# Provider disconnect status codes
STATUS_CODE_REASONS = {
    401: "logged-out",
    403: "unauthorized",
    408: "timeout",
    411: "multidevice-mismatch",
    428: "connection-closed",
    440: "replaced",
    500: "bad-session",
    515: "restart-required",
}

REASON_ALIASES = {
    "loggedout": "logged-out",
    "logged-out": "logged-out",
    "logout": "logged-out",
    "not-authorized": "unauthorized",
    "unauthorized": "unauthorized",
    "forbidden": "unauthorized",
    "conflict": "replaced",
    "replaced": "replaced",
    "connection-replaced": "replaced",
    "replaced-by-another-session": "replaced",
    "timedout": "timeout",
    "timed-out": "timeout",
    "connection-lost": "timeout",
}

# Substrings of known error messages, checked in order
ERROR_SIGNATURES = (
    ("conflict", "replaced"),
    ("not-authorized", "unauthorized"),
    ("logged out", "logged-out"),
    ("rate-overlimit", "rate-limited"),
    ("connection closed", "connection-closed"),
    ("timed out", "timeout"),
    ("timeout", "timeout"),
)


class ReconnectAction(Enum):
    """What to do after a close."""

    RETRY = "retry"
    STOP = "stop"


@dataclass(frozen=True)
class Decision:
    """Result of a reconnect decision. ``delay`` is 0 for STOP."""

    action: ReconnectAction
    delay: float = 0.0

    @property
    def should_retry(self) -> bool:
        return self.action is ReconnectAction.RETRY


def normalize_reason(raw: Union[int, str, None]) -> str:
    """Map a provider status code or reason string to a canonical reason."""
    if raw is None:
        return UNKNOWN_REASON
    if isinstance(raw, bool):
        return UNKNOWN_REASON
    if isinstance(raw, int):
        return STATUS_CODE_REASONS.get(raw, UNKNOWN_REASON)

    text = str(raw).strip().lower().replace("_", "-").replace(" ", "-")
    if not text:
        return UNKNOWN_REASON
    if text.isdigit():
        return STATUS_CODE_REASONS.get(int(text), UNKNOWN_REASON)
    return REASON_ALIASES.get(text, text)


def classify_error(error: BaseException) -> str:
    """Map a stream exception to a reason via known error signatures."""
    message = str(error).lower()
    for signature, reason in ERROR_SIGNATURES:
        if signature in message:
            return reason
    return UNKNOWN_REASON


def is_terminal(reason: str) -> bool:
    return reason in TERMINAL_REASONS


class ReconnectPolicy:
    """Exponential backoff with a ceiling.

    Holds only its constants, so one instance can be shared by every
    lineage.
    """

    def __init__(self, base_delay: float = 2.0, max_delay: float = 60.0):
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay

    def decide(self, close_reason: Union[int, str, None], attempt_count: int) -> Decision:
        """Decide whether a lineage restarts after a close.

        Args:
            close_reason: Raw or canonical close reason.
            attempt_count: Attempts made so far in this lineage.

        Returns:
            STOP for terminal reasons, otherwise RETRY with
            ``min(max_delay, base_delay * 2 ** attempt_count)``.
        """
        reason = normalize_reason(close_reason)
        if is_terminal(reason):
            return Decision(ReconnectAction.STOP)

        attempt = max(0, attempt_count)
        # Past this exponent the delay is already capped
        if attempt >= 64:
            return Decision(ReconnectAction.RETRY, self.max_delay)
        delay = min(self.max_delay, self.base_delay * (2**attempt))
        return Decision(ReconnectAction.RETRY, delay)
