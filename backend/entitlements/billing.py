"""
Billing collaborator boundary.

Purchases reach the core two ways:
- push: the billing SDK's purchase-updated listener publishes each event
  into a PurchaseEventChannel, which PurchaseReconciler.consume() drains
- pull: a restore sweep asks a BillingClient for the currently active
  purchases and hands the list to PurchaseReconciler.reconcile_restored()

Both paths end in the same idempotent apply_purchase().
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Protocol

from .errors import InvalidPurchaseEvent
from .models import PurchaseEvent

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class BillingClient(Protocol):
    """Pull-style access to the platform billing SDK."""

    async def list_active_purchases(self) -> List[Any]:
        """Return raw purchase payloads (dicts or PurchaseEvent) currently owned by the user."""
        ...


class PurchaseEventChannel:
    """
    Inbound queue of purchase notifications.

    SDK callbacks publish into it (publish_nowait is safe to call from a
    synchronous listener running on the event loop); the reconciler iterates
    it with `async for` until close() is called. Closing never needs queue
    space, so a full bounded channel still stops its consumers once drained.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def publish(self, event: Any) -> None:
        if self.closed:
            raise RuntimeError("Purchase event channel is closed")
        await self._queue.put(event)

    def publish_nowait(self, event: Any) -> None:
        if self.closed:
            raise RuntimeError("Purchase event channel is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Stop consumers once the events already queued have been drained."""
        self._closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self.closed:
                raise StopAsyncIteration

            getter = asyncio.ensure_future(self._queue.get())
            closer = asyncio.ensure_future(self._closed.wait())
            try:
                done, _ = await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                getter.cancel()
                closer.cancel()
            if getter in done:
                return getter.result()


def sort_purchases_by_recency(purchases: Iterable[Any]) -> List[PurchaseEvent]:
    """
    Order purchases oldest to newest so the most recent one is applied last.

    Malformed payloads are logged and dropped. Purchases without a
    transaction date sort first, in their original relative order.
    """
    events = []
    for raw in purchases:
        try:
            events.append(PurchaseEvent.parse(raw))
        except InvalidPurchaseEvent as e:
            logger.warning(f"Skipping malformed purchase in restore list: {e}")
    return sorted(events, key=lambda event: event.purchased_at or _OLDEST)
