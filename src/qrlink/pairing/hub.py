"""Fan-out of pairing QR/status events to passive observers.

One producer (the pairing session) publishes; any number of observers
subscribe and read from their own bounded queue. Publishing never waits on
an observer: a full queue drops its oldest event, and an observer that keeps
overflowing without reading is detached.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

EVENT_QR = "qr"
EVENT_STATUS = "status"

STATUS_AWAITING_QR = "awaiting-qr"

_subscriber_ids = itertools.count(1)


@dataclass(frozen=True)
class HubEvent:
    """Observer-facing event: ``{"type": "qr" | "status", "value": str}``."""

    type: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "value": self.value}

    @classmethod
    def qr(cls, value: str) -> "HubEvent":
        return cls(EVENT_QR, value)

    @classmethod
    def status(cls, value: str) -> "HubEvent":
        return cls(EVENT_STATUS, value)


# Queued to wake a reader when its subscription is closed
_CLOSED = object()


class Subscription:
    """One observer's view of a hub.

    Attributes:
        subscriber_id: Unique observer id.
        last_delivered: Last event placed in this observer's queue.
    """

    def __init__(self, queue_size: int, max_overflows: int):
        self.subscriber_id = f"sub-{next(_subscriber_ids)}"
        self.last_delivered: Optional[HubEvent] = None
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))
        self._max_overflows = max_overflows
        self._overflows = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, event: HubEvent) -> bool:
        """Enqueue without blocking.

        Returns:
            False if the observer overflowed too often and must be detached.
        """
        if self._closed:
            return False
        if event == self.last_delivered:
            return True

        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            self._overflows += 1
            if self._overflows > self._max_overflows:
                return False

        self._queue.put_nowait(event)
        self.last_delivered = event
        return True

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def get(self, timeout: Optional[float] = None) -> Optional[HubEvent]:
        """Wait for the next event.

        Returns:
            The next event, or None on timeout or once the subscription
            is closed (check ``closed`` to tell them apart).
        """
        if self._closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

        if item is _CLOSED:
            return None
        self._overflows = 0
        return item


class BroadcastHub:
    """Retains the latest ``{qr, status}`` snapshot and fans events out."""

    def __init__(self, queue_size: int = 16, max_overflows: int = 3):
        """Initialize hub.

        Args:
            queue_size: Bound of each observer's queue.
            max_overflows: Overflows tolerated between reads before an
                observer is detached.
        """
        self._queue_size = queue_size
        self._max_overflows = max_overflows
        self._subscriptions: dict[str, Subscription] = {}
        self._qr: Optional[str] = None
        self._status: Optional[str] = None
        self._closed = False

    @property
    def queue_size(self) -> int:
        return self._queue_size

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def current_qr(self) -> Optional[str]:
        return self._qr

    @property
    def current_status(self) -> Optional[str]:
        return self._status

    def snapshot(self) -> list[HubEvent]:
        """Retained state as events, status then QR, matching live publish order."""
        events = []
        if self._status is not None:
            events.append(HubEvent.status(self._status))
        if self._qr is not None:
            events.append(HubEvent.qr(self._qr))
        return events

    def subscribe(self) -> Subscription:
        """Attach an observer and hand it the current snapshot."""
        subscription = Subscription(self._queue_size, self._max_overflows)
        if self._closed:
            subscription._close()
            return subscription

        for event in self.snapshot():
            subscription._offer(event)
        self._subscriptions[subscription.subscriber_id] = subscription
        logger.debug(f"Observer {subscription.subscriber_id} attached")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach an observer. Safe to call more than once."""
        removed = self._subscriptions.pop(subscription.subscriber_id, None)
        subscription._close()
        if removed is not None:
            logger.debug(f"Observer {subscription.subscriber_id} detached")

    def publish(self, event: HubEvent) -> None:
        """Update the snapshot and enqueue to every observer."""
        if self._closed:
            return

        if event.type == EVENT_QR:
            self._qr = event.value
        elif event.type == EVENT_STATUS:
            self._status = event.value
            if event.value != STATUS_AWAITING_QR:
                self._qr = None
        else:
            raise ValueError(f"Unknown event type: {event.type}")

        for subscription in list(self._subscriptions.values()):
            if not subscription._offer(event):
                logger.warning(
                    f"Dropping slow observer {subscription.subscriber_id} "
                    f"({subscription.dropped} events lost)"
                )
                self.unsubscribe(subscription)

    def close(self) -> None:
        """Detach all observers and stop accepting events."""
        self._closed = True
        for subscription in list(self._subscriptions.values()):
            self.unsubscribe(subscription)

    def __len__(self) -> int:
        return len(self._subscriptions)
