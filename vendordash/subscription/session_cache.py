"""Holds the vendor's entitlement snapshot for the rest of the dashboard."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Protocol

from vendordash.metrics import record_entitlement_refresh

from .errors import RefreshFailed
from .models import EntitlementSnapshot

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[EntitlementSnapshot], None]


class SnapshotSource(Protocol):
    async def get_current_subscription(self) -> EntitlementSnapshot:
        ...


class SubscriptionSessionCache:
    """Last-known entitlement snapshot with coalesced refreshes.

    Snapshots are immutable and replaced by a single assignment, so readers
    always see either the previous or the new snapshot. Overlapping
    ``refresh()`` calls share one backend request.
    """

    def __init__(self, backend: SnapshotSource) -> None:
        self._backend = backend
        self._snapshot = EntitlementSnapshot.empty()
        self._populated = False
        self._generation = 0
        self._inflight: Optional[asyncio.Task[EntitlementSnapshot]] = None
        self._listeners: List[SnapshotListener] = []

    @property
    def is_populated(self) -> bool:
        return self._populated

    def current_snapshot(self) -> EntitlementSnapshot:
        return self._snapshot

    def has_active_subscription(self) -> bool:
        return self._snapshot.has_active_subscription

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener for snapshot swaps and return its unsubscribe hook."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def refresh(self, *, fresh: bool = False) -> EntitlementSnapshot:
        """Replace the snapshot with a backend read, joining one already in flight.

        With ``fresh=True`` a request sent before this call is awaited but its
        result is not adopted; a new read is issued afterwards so the snapshot
        reflects every backend change that preceded the call.
        """

        stale = self._inflight if fresh else None
        if stale is not None:
            try:
                await asyncio.shield(stale)
            except RefreshFailed:
                pass
        task = self._inflight
        if task is None or task is stale:
            task = asyncio.ensure_future(self._fetch(self._generation))
            self._inflight = task
            task.add_done_callback(self._forget)
        return await asyncio.shield(task)

    def _forget(self, task: "asyncio.Task[EntitlementSnapshot]") -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Mark the failure as retrieved when every caller has gone away.
            task.exception()

    async def _fetch(self, generation: int) -> EntitlementSnapshot:
        try:
            snapshot = await self._backend.get_current_subscription()
        except Exception as exc:
            record_entitlement_refresh("failed")
            logger.warning({"event": "entitlement_refresh_failed", "reason": str(exc)})
            raise RefreshFailed(f"Failed to refresh subscription details: {exc}") from exc

        if generation != self._generation:
            # Session ended while the request was in flight.
            record_entitlement_refresh("discarded")
            logger.info({"event": "entitlement_refresh_discarded"})
            return self._snapshot

        self._swap(snapshot)
        self._populated = True
        record_entitlement_refresh("ok")
        logger.info(
            {
                "event": "entitlement_refreshed",
                "active": snapshot.has_active_subscription,
                "status": snapshot.subscription.status.value if snapshot.subscription else None,
            }
        )
        return snapshot

    def clear(self) -> None:
        """Drop the snapshot at logout; a refresh still in flight is discarded."""

        self._generation += 1
        self._inflight = None
        self._populated = False
        self._swap(EntitlementSnapshot.empty())

    def _swap(self, snapshot: EntitlementSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Entitlement listener failed")
