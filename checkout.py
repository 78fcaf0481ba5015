"""
Checkout Coordinator
====================
Finalizes the current order: validates it, then either submits it to the
order service or parks it in the offline queue.

Outcomes:
- submitted: backend accepted the order; cart cleared, live notifications sent
- queued: terminal offline or submission failed; order stored for sync,
  cart cleared

Validation failures raise CheckoutValidationError and leave every piece of
state untouched.
"""

import asyncio
import structlog
from collections import deque
from typing import Optional, Dict, Any, List, Deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from prometheus_client import Counter, Histogram

from order import OrderEngine, OrderSnapshot, to_decimal, round_money
from offline_queue import OfflineQueue, PendingOrder
from connectivity import ConnectivityMonitor
from pos_client import SubmissionError, build_order_payload


logger = structlog.get_logger(__name__)


RECENT_ORDERS_LIMIT = 50


# ============================================================================
# METRICS
# ============================================================================

checkout_outcomes = Counter(
    'pos_checkout_outcomes_total',
    'Checkout attempts by outcome',
    ['outcome']
)
order_value = Histogram(
    'pos_order_value',
    'Order total at checkout',
    buckets=(5, 10, 20, 35, 50, 75, 100, 150, 250, 500)
)


# ============================================================================
# TYPES
# ============================================================================

class CheckoutValidationError(ValueError):
    """Checkout pre-condition not met; message is user-facing."""
    pass


class PaymentMethod(Enum):
    CASH = "cash"
    CARD = "card"
    DIGITAL_WALLET = "digital_wallet"
    BANK_TRANSFER = "bank_transfer"


class CheckoutOutcome(Enum):
    SUBMITTED = "submitted"
    QUEUED = "queued"


@dataclass(frozen=True)
class CheckoutResult:
    """What happened to a finalized order."""
    outcome: CheckoutOutcome
    record: Dict[str, Any] = field(default_factory=dict)
    change_due: Optional[float] = None
    completed_at: str = ""

    @property
    def order_id(self) -> Optional[str]:
        return self.record.get("id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "order_id": self.order_id,
            "record": dict(self.record),
            "change_due": self.change_due,
            "completed_at": self.completed_at
        }


# ============================================================================
# CHECKOUT COORDINATOR
# ============================================================================

class CheckoutCoordinator:
    """
    Ties the order engine to payment finalization.

    One checkout at a time: a second call while one is in flight is rejected.
    """

    def __init__(
        self,
        engine: OrderEngine,
        queue: OfflineQueue,
        client: Any,
        connectivity: ConnectivityMonitor,
        hub: Any = None,
        outlet_id: Optional[str] = None,
        staff_id: Optional[str] = None,
        terminal_id: Optional[str] = None,
        offline_enabled: bool = True
    ):
        """
        Args:
            engine: Order state engine
            queue: Offline queue for orders that cannot be submitted
            client: Object with async submit_order(payload, idempotency_key=...)
            connectivity: Reachability signal
            hub: Event hub for live notifications (optional)
            outlet_id: Outlet the terminal belongs to
            staff_id: Signed-in staff member
            terminal_id: Terminal identifier
            offline_enabled: Allow queuing when the backend is unreachable
        """
        self.engine = engine
        self.queue = queue
        self.client = client
        self.connectivity = connectivity
        self.hub = hub

        self.outlet_id = outlet_id
        self.staff_id = staff_id
        self.terminal_id = terminal_id
        self.offline_enabled = offline_enabled

        self._in_flight = False
        self._recent: Deque[CheckoutResult] = deque(maxlen=RECENT_ORDERS_LIMIT)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def recent_orders(self) -> List[CheckoutResult]:
        """Most recent outcomes, newest first."""
        return list(reversed(self._recent))

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def validate(
        self,
        snapshot: OrderSnapshot,
        payment_method: Any,
        cash_received: Any = None
    ) -> PaymentMethod:
        """
        Check checkout pre-conditions.

        Returns:
            Parsed payment method

        Raises:
            CheckoutValidationError: First unmet pre-condition
        """
        if snapshot.is_empty:
            raise CheckoutValidationError("Order is empty")

        if not snapshot.table_id:
            raise CheckoutValidationError("Please select a table")

        if not payment_method:
            raise CheckoutValidationError("Please select payment method")

        try:
            method = PaymentMethod(
                payment_method.value if isinstance(payment_method, PaymentMethod)
                else str(payment_method)
            )
        except ValueError:
            raise CheckoutValidationError(f"Unsupported payment method: {payment_method}")

        if method == PaymentMethod.CASH:
            try:
                tendered = to_decimal(cash_received) if cash_received is not None else None
            except (ValueError, ArithmeticError):
                tendered = None

            if tendered is None or not tendered.is_finite() or tendered < Decimal(str(snapshot.total)):
                raise CheckoutValidationError("Insufficient cash amount")

        return method

    # ========================================================================
    # CHECKOUT
    # ========================================================================

    async def checkout(
        self,
        payment_method: Any,
        cash_received: Any = None
    ) -> CheckoutResult:
        """
        Finalize the current order.

        Args:
            payment_method: PaymentMethod or its value
            cash_received: Amount tendered (required for cash)

        Returns:
            CheckoutResult (submitted or queued)

        Raises:
            CheckoutValidationError: Pre-condition failed; nothing changed
        """
        if self._in_flight:
            raise CheckoutValidationError("Checkout already in progress")

        snapshot = self.engine.snapshot()
        method = self.validate(snapshot, payment_method, cash_received)

        if not self.connectivity.is_online and not self.offline_enabled:
            raise CheckoutValidationError("Terminal is offline")

        change_due = None
        if method == PaymentMethod.CASH:
            change_due = round_money(to_decimal(cash_received) - Decimal(str(snapshot.total)))

        order = {
            **snapshot.to_dict(),
            "payment_method": method.value,
            "cash_received": float(cash_received) if method == PaymentMethod.CASH else None,
            "outlet_id": self.outlet_id,
            "staff_id": self.staff_id,
            "terminal_id": self.terminal_id
        }

        self._in_flight = True

        try:
            logger.info(
                "checkout_started",
                table_id=snapshot.table_id,
                total=snapshot.total,
                payment_method=method.value,
                online=self.connectivity.is_online
            )

            if not self.connectivity.is_online:
                result = self._enqueue(order, change_due, reason="offline")
                self.engine.clear()
            else:
                result = await self._submit_online(order, change_due, snapshot)

        finally:
            self._in_flight = False

        self._recent.append(result)
        order_value.observe(snapshot.total)
        checkout_outcomes.labels(outcome=result.outcome.value).inc()

        return result

    async def _submit_online(
        self,
        order: Dict[str, Any],
        change_due: Optional[float],
        snapshot: OrderSnapshot
    ) -> CheckoutResult:
        """
        Submit the captured order.

        Offline mode on: the cart is cleared before the network await; edits
        made meanwhile belong to the next order.
        Offline mode off: the cart is cleared after acceptance, and only if it
        was not edited during the await.
        """
        if self.offline_enabled:
            self.engine.clear()

        try:
            accepted = await self.client.submit_order(build_order_payload(order))

        except SubmissionError as e:
            logger.warning(
                "checkout_submit_failed",
                error=str(e),
                status_code=e.status_code,
                offline_enabled=self.offline_enabled
            )

            if not self.offline_enabled:
                raise CheckoutValidationError("Order could not be submitted, please retry")

            result = self._enqueue(order, change_due, reason="submit_failed")

            # Network-class failure: let the next successful probe trigger sync
            if e.status_code is None:
                await self.connectivity.update(False)

            return result

        if not self.offline_enabled:
            if self.engine.snapshot() is snapshot:
                self.engine.clear()
            else:
                logger.info("checkout_cart_edited_during_submit", table_id=self.engine.table_id)

        result = CheckoutResult(
            outcome=CheckoutOutcome.SUBMITTED,
            record=dict(accepted),
            change_due=change_due,
            completed_at=datetime.utcnow().isoformat()
        )

        logger.info("checkout_submitted", order_id=result.order_id, total=order["total"])

        await self._notify(accepted, order)
        return result

    def _enqueue(self, order: Dict[str, Any], change_due: Optional[float], reason: str) -> CheckoutResult:
        pending: PendingOrder = self.queue.add_pending_order(order)

        logger.info(
            "checkout_queued",
            pending_id=pending.id,
            reason=reason,
            queue_size=len(self.queue)
        )

        return CheckoutResult(
            outcome=CheckoutOutcome.QUEUED,
            record=pending.to_dict(),
            change_due=change_due,
            completed_at=pending.timestamp
        )

    async def _notify(self, accepted: Dict[str, Any], order: Dict[str, Any]):
        """Best-effort live notifications; failures never affect checkout."""
        if self.hub is None:
            return

        try:
            await self.hub.notify_order_created(accepted)
            await self.hub.notify_payment_completed({
                "orderId": accepted.get("id"),
                "amount": order["total"],
                "paymentMethod": order["payment_method"]
            })
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("checkout_notify_failed", error=str(e))

    def get_status(self) -> Dict[str, Any]:
        return {
            "in_flight": self._in_flight,
            "recent_orders": [r.to_dict() for r in self.recent_orders[:10]]
        }
