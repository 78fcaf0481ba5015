"""
Offline Queue Module
====================
Durable pending-order queue and the sync manager that drains it.

Guarantees:
- No order is lost: entries leave the queue only on confirmed acceptance
- Drain order is insertion order
- A failing entry never blocks the entries behind it
- Corrupt storage resets to an empty queue instead of raising
- At-least-once: replays carry the pending id as an idempotency key
"""

import time
import asyncio
import uuid
import logging
from copy import deepcopy
from typing import Dict, List, Any, Optional, Callable, Tuple, Mapping
from datetime import datetime, timezone
from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge

from storage import KeyValueStore, PENDING_ORDERS_KEY
from connectivity import ConnectivityMonitor
from pos_client import SubmissionError, build_order_payload


logger = logging.getLogger(__name__)


PENDING_SYNC = "pending_sync"
OFFLINE_ID_PREFIX = "offline_"
DEFAULT_STORAGE_LIMIT = 50


# ============================================================================
# METRICS
# ============================================================================

pending_orders_gauge = Gauge(
    'pos_pending_orders',
    'Orders waiting in the offline queue'
)
sync_results = Counter(
    'pos_sync_results_total',
    'Offline queue sync attempts by result',
    ['result']
)


# ============================================================================
# PENDING ORDER
# ============================================================================

def generate_offline_id() -> str:
    """Locally unique id, distinguishable from backend-issued ids."""
    return f"{OFFLINE_ID_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class PendingOrder:
    """Order snapshot waiting for remote acceptance."""
    id: str
    timestamp: str
    order: Dict[str, Any] = field(default_factory=dict)
    status: str = PENDING_SYNC

    def to_dict(self) -> Dict[str, Any]:
        """Flat record: order fields plus sync metadata."""
        return {
            **deepcopy(self.order),
            "id": self.id,
            "timestamp": self.timestamp,
            "status": self.status
        }

    def to_payload(self) -> Dict[str, Any]:
        """Wire payload for the remote order endpoint."""
        return build_order_payload(
            self.order,
            client_order_id=self.id,
            offline_timestamp=self.timestamp
        )

    @classmethod
    def from_dict(cls, data: Any) -> Optional["PendingOrder"]:
        """Rebuild from a stored record; None if the record is unusable."""
        if not isinstance(data, dict):
            return None

        pending_id = data.get("id")
        if not isinstance(pending_id, str) or not pending_id:
            return None

        order = {
            key: value for key, value in data.items()
            if key not in ("id", "timestamp", "status")
        }

        return cls(
            id=pending_id,
            timestamp=str(data.get("timestamp") or ""),
            order=order,
            status=str(data.get("status") or PENDING_SYNC)
        )


# ============================================================================
# OFFLINE QUEUE
# ============================================================================

class OfflineQueue:
    """
    Durable FIFO of orders finalized while offline.

    The full queue is written through to storage on every change.
    """

    def __init__(
        self,
        store: KeyValueStore,
        storage_key: str = PENDING_ORDERS_KEY,
        storage_limit: int = DEFAULT_STORAGE_LIMIT
    ):
        self.store = store
        self.storage_key = storage_key
        self.storage_limit = storage_limit

        self._queue: List[PendingOrder] = []
        self._load()

        logger.info(f"OfflineQueue initialized ({len(self._queue)} pending)")

    # ========================================================================
    # QUEUE OPERATIONS
    # ========================================================================

    def add_pending_order(self, order: Any) -> PendingOrder:
        """
        Append an order for later sync.

        Args:
            order: Order mapping or anything with to_dict() (e.g. OrderSnapshot)

        Returns:
            Stamped pending record
        """
        if hasattr(order, "to_dict"):
            order = order.to_dict()

        if not isinstance(order, Mapping):
            raise TypeError(f"Cannot queue order of type {type(order).__name__}")

        body = {
            key: value for key, value in deepcopy(dict(order)).items()
            if key not in ("id", "timestamp", "status")
        }

        pending = PendingOrder(
            id=generate_offline_id(),
            timestamp=datetime.now(timezone.utc).isoformat(),
            order=body
        )

        self._queue.append(pending)
        self._persist()

        if len(self._queue) > self.storage_limit:
            logger.warning(
                f"Offline queue above soft limit: {len(self._queue)} > {self.storage_limit}"
            )

        logger.info(f"Order queued for sync: {pending.id}")
        return pending

    def remove_pending_order(self, pending_id: str) -> bool:
        """
        Remove an entry by id.

        Returns:
            True if an entry was removed
        """
        before = len(self._queue)
        self._queue = [p for p in self._queue if p.id != pending_id]
        removed = len(self._queue) != before

        self._persist()

        if removed:
            logger.info(f"Pending order removed: {pending_id}")
        return removed

    def get(self, pending_id: str) -> Optional[PendingOrder]:
        for pending in self._queue:
            if pending.id == pending_id:
                return self._copy(pending)
        return None

    @property
    def pending_orders(self) -> Tuple[PendingOrder, ...]:
        """Snapshot of the queue in insertion order."""
        return tuple(self._copy(p) for p in self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    def is_empty(self) -> bool:
        return not self._queue

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    def _load(self):
        data = self.store.get(self.storage_key)

        if data is None:
            self._queue = []
            self._persist()
            return

        if not isinstance(data, list):
            logger.error("Stored pending orders are malformed, starting empty")
            self._queue = []
            self._persist()
            return

        queue = []
        for record in data:
            pending = PendingOrder.from_dict(record)
            if pending is None:
                logger.warning(f"Skipping malformed pending order: {record!r}")
                continue
            queue.append(pending)

        self._queue = queue
        pending_orders_gauge.set(len(self._queue))

    def _persist(self):
        pending_orders_gauge.set(len(self._queue))

        if not self.store.set(self.storage_key, [p.to_dict() for p in self._queue]):
            logger.error(f"Failed to persist offline queue ({len(self._queue)} entries)")

    @staticmethod
    def _copy(pending: PendingOrder) -> PendingOrder:
        return PendingOrder(
            id=pending.id,
            timestamp=pending.timestamp,
            order=deepcopy(pending.order),
            status=pending.status
        )

    def __repr__(self):
        return f"<OfflineQueue pending={len(self._queue)}>"


# ============================================================================
# SYNC MANAGER
# ============================================================================

@dataclass
class SyncReport:
    """Outcome of one sync pass."""
    attempted: int = 0
    synced: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "synced": list(self.synced),
            "failed": list(self.failed),
            "skipped": self.skipped
        }


class SyncManager:
    """
    Replays the offline queue against the remote order endpoint.

    Triggered on the offline → online transition only; never on a timer.
    """

    def __init__(
        self,
        queue: OfflineQueue,
        client: Any,
        connectivity: ConnectivityMonitor
    ):
        """
        Args:
            queue: Offline queue to drain
            client: Object with async submit_order(payload, idempotency_key=...)
            connectivity: Reachability signal
        """
        self.queue = queue
        self.client = client
        self.connectivity = connectivity

        self._syncing = False
        self._synced_listeners: List[Callable] = []
        self.last_report: Optional[SyncReport] = None

        connectivity.on_change(self._on_connectivity_change)

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def on_synced(self, callback: Callable):
        """
        Register a callback for each accepted order.

        Args:
            callback: Called with (pending, accepted_record); may be async
        """
        self._synced_listeners.append(callback)

    async def _on_connectivity_change(self, is_online: bool):
        if is_online:
            logger.info("Back online, syncing pending orders")
            await self.sync_pending_orders()

    async def sync_pending_orders(self) -> SyncReport:
        """
        Submit every pending order in insertion order.

        Accepted entries are removed; failed entries stay queued for the next
        reconnect. Never raises.
        """
        if not self.connectivity.is_online:
            logger.debug("Sync skipped: offline")
            return SyncReport(skipped="offline")

        if self.queue.is_empty():
            return SyncReport(skipped="empty")

        if self._syncing:
            logger.debug("Sync skipped: pass already in progress")
            return SyncReport(skipped="in_progress")

        self._syncing = True
        report = SyncReport()

        try:
            for pending in self.queue.pending_orders:
                report.attempted += 1

                try:
                    accepted = await self.client.submit_order(
                        pending.to_payload(),
                        idempotency_key=pending.id
                    )
                except SubmissionError as e:
                    report.failed.append(pending.id)
                    sync_results.labels(result="failed").inc()
                    logger.error(f"Failed to sync order {pending.id}: {str(e)}")
                    continue
                except Exception as e:
                    report.failed.append(pending.id)
                    sync_results.labels(result="error").inc()
                    logger.error(
                        f"Unexpected error syncing order {pending.id}: {str(e)}",
                        exc_info=True
                    )
                    continue

                self.queue.remove_pending_order(pending.id)
                report.synced.append(pending.id)
                sync_results.labels(result="synced").inc()

                await self._notify_synced(pending, accepted)

        finally:
            self._syncing = False

        self.last_report = report

        logger.info(
            f"Sync pass complete: {len(report.synced)} synced, "
            f"{len(report.failed)} failed, {len(self.queue)} still pending"
        )

        return report

    async def _notify_synced(self, pending: PendingOrder, accepted: Dict[str, Any]):
        for listener in list(self._synced_listeners):
            try:
                result = listener(pending, accepted)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in sync listener: {str(e)}", exc_info=True)

    def get_status(self) -> dict:
        return {
            "pending": len(self.queue),
            "is_syncing": self._syncing,
            "last_report": self.last_report.to_dict() if self.last_report else None
        }
