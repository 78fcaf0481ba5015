"""
Order Module
============
Order state engine for the terminal's single active order (cart).

Guarantees:
- Line items are unique by item id (re-adding increments quantity)
- Totals are always recomputed from items, never trusted from storage
- Every mutation is written through to durable storage
- No operation raises; invalid ids are no-ops
"""

import logging
from typing import Dict, List, Any, Optional, Tuple, Iterable, Mapping
from dataclasses import dataclass, field, asdict
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum

from prometheus_client import Counter

from storage import KeyValueStore, CURRENT_ORDER_KEY


logger = logging.getLogger(__name__)


DEFAULT_TAX_RATE = 0.10
TWO_PLACES = Decimal("0.01")


# ============================================================================
# METRICS
# ============================================================================

order_mutations = Counter(
    'pos_order_mutations_total',
    'Order engine mutations',
    ['operation']
)
order_persist_failures = Counter(
    'pos_order_persist_failures_total',
    'Failed attempts to persist the current order'
)


# ============================================================================
# ORDER STATUS
# ============================================================================

class OrderStatus(Enum):
    """
    Local order lifecycle.

    DRAFT → CLEARED (checkout or manual clear), CLEARED → DRAFT on next mutation.
    Backend-side lifecycle is not tracked here.
    """
    DRAFT = "draft"
    CLEARED = "cleared"


# ============================================================================
# MONEY HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """Exact decimal for a price-like value (floats go through str)."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Decimal) -> Decimal:
    """Round half-up to cents, staying in Decimal."""
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def round_money(value: Decimal) -> float:
    """Round half-up to cents."""
    return float(quantize_money(value))


def compute_totals(
    items: Iterable["LineItem"],
    tax_rate: float,
    discount: float = 0.0
) -> Tuple[float, float, float]:
    """
    Compute (subtotal, tax, total) for a set of line items.

    Rounded at each step, every step built on the rounded one before:
    subtotal = round(Σ price × quantity), tax = round(subtotal × rate),
    total = round(subtotal + tax − discount).
    """
    subtotal = quantize_money(sum(
        (to_decimal(item.price) * item.quantity for item in items),
        Decimal("0")
    ))
    tax = quantize_money(subtotal * to_decimal(tax_rate))
    total = quantize_money(subtotal + tax - to_decimal(discount))

    return float(subtotal), float(tax), float(total)


# ============================================================================
# LINE ITEM
# ============================================================================

@dataclass(frozen=True)
class LineItem:
    """
    Immutable order line.

    Changing quantity creates a new object via with_quantity().
    """
    id: str
    name: str
    price: float
    quantity: int = 1
    category: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def with_quantity(self, quantity: int) -> "LineItem":
        return LineItem(
            id=self.id,
            name=self.name,
            price=self.price,
            quantity=quantity,
            category=self.category,
            notes=self.notes
        )

    @classmethod
    def from_mapping(
        cls,
        data: Any,
        quantity: Optional[int] = None
    ) -> Optional["LineItem"]:
        """
        Build a line item from a menu item or stored payload.

        Unknown keys are ignored. Returns None when the payload has no id or
        no usable price.
        """
        if isinstance(data, LineItem):
            return data if quantity is None else data.with_quantity(quantity)

        if not isinstance(data, Mapping):
            return None

        item_id = data.get("id")
        if item_id is None or str(item_id) == "":
            return None

        if data.get("price") is None:
            return None

        try:
            price = float(to_decimal(data["price"]))
        except (InvalidOperation, ValueError, TypeError):
            return None

        if price < 0:
            return None

        if quantity is None:
            try:
                quantity = int(data.get("quantity", 1))
            except (ValueError, TypeError):
                return None

        return cls(
            id=str(item_id),
            name=str(data.get("name") or item_id),
            price=price,
            quantity=quantity,
            category=data.get("category"),
            notes=data.get("notes")
        )


# ============================================================================
# ORDER SNAPSHOT
# ============================================================================

@dataclass(frozen=True)
class OrderSnapshot:
    """Immutable view of the order handed to consumers."""
    id: Optional[str]
    table_id: Optional[str]
    items: Tuple[LineItem, ...] = field(default_factory=tuple)
    subtotal: float = 0.0
    tax: float = 0.0
    discount: float = 0.0
    total: float = 0.0
    status: OrderStatus = OrderStatus.DRAFT

    @property
    def is_empty(self) -> bool:
        return len(self.items) == 0

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def get_item(self, item_id: str) -> Optional[LineItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "table_id": self.table_id,
            "items": [item.to_dict() for item in self.items],
            "subtotal": self.subtotal,
            "tax": self.tax,
            "discount": self.discount,
            "total": self.total,
            "status": self.status.value
        }


# ============================================================================
# ORDER ENGINE
# ============================================================================

class OrderEngine:
    """
    Owns the terminal's single live order.

    Every mutating operation:
    1. Mutates in memory
    2. Recomputes totals
    3. Writes the snapshot through to storage (failures logged, ignored)
    4. Returns the new snapshot
    """

    def __init__(
        self,
        store: KeyValueStore,
        tax_rate: float = DEFAULT_TAX_RATE,
        storage_key: str = CURRENT_ORDER_KEY
    ):
        self.store = store
        self.tax_rate = tax_rate
        self.storage_key = storage_key

        self._order_id: Optional[str] = None
        self._table_id: Optional[str] = None
        self._items: Dict[str, LineItem] = {}
        self._discount = 0.0
        self._status = OrderStatus.DRAFT

        self._snapshot = self._build_snapshot()

        logger.info(f"OrderEngine initialized (tax_rate={tax_rate})")

    # ========================================================================
    # READ ACCESS
    # ========================================================================

    def snapshot(self) -> OrderSnapshot:
        """Current immutable order snapshot."""
        return self._snapshot

    @property
    def table_id(self) -> Optional[str]:
        return self._table_id

    @property
    def is_empty(self) -> bool:
        return not self._items

    @property
    def item_count(self) -> int:
        return self._snapshot.item_count

    def get_items(self) -> List[LineItem]:
        return list(self._items.values())

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def add_item(self, item: Any) -> OrderSnapshot:
        """
        Add one unit of an item.

        An item already in the order has its quantity incremented by 1;
        otherwise it is appended with quantity 1.

        Args:
            item: Menu item mapping (needs "id" and "price") or LineItem

        Returns:
            New order snapshot
        """
        line = LineItem.from_mapping(item, quantity=1)
        if line is None:
            logger.warning(f"Ignoring invalid item: {item!r}")
            return self._snapshot

        existing = self._items.get(line.id)
        if existing is not None:
            self._items[line.id] = existing.with_quantity(existing.quantity + 1)
            logger.info(f"Incremented {existing.name} to {existing.quantity + 1}")
        else:
            self._items[line.id] = line
            logger.info(f"Added item: {line.name} (price=${line.price:.2f})")

        return self._commit("add_item")

    def remove_item(self, item_id: str) -> OrderSnapshot:
        """Remove an item; absent ids are a no-op."""
        removed = self._items.pop(item_id, None)
        if removed is None:
            logger.debug(f"Item {item_id} not in order")
        else:
            logger.info(f"Removed item: {removed.name}")

        return self._commit("remove_item")

    def update_quantity(self, item_id: str, quantity: Any) -> OrderSnapshot:
        """
        Set an item's quantity.

        Quantity is clamped to max(0, quantity); 0 removes the item.
        Absent ids are a no-op.
        """
        try:
            quantity = max(0, int(quantity))
        except (ValueError, TypeError):
            logger.warning(f"Invalid quantity for {item_id}: {quantity!r}")
            return self._snapshot

        if quantity == 0:
            return self.remove_item(item_id)

        existing = self._items.get(item_id)
        if existing is None:
            logger.debug(f"Item {item_id} not in order")
        else:
            self._items[item_id] = existing.with_quantity(quantity)
            logger.info(
                f"Updated quantity: {existing.name} {existing.quantity} → {quantity}"
            )

        return self._commit("update_quantity")

    def set_table(self, table: Any) -> OrderSnapshot:
        """
        Assign the order to a table, or clear the assignment with None.

        Accepts a table mapping/object with an "id", or a raw id.
        Items are not affected.
        """
        if table is None:
            table_id = None
        elif isinstance(table, Mapping):
            table_id = table.get("id")
        else:
            table_id = getattr(table, "id", table)

        self._table_id = str(table_id) if table_id is not None else None
        logger.info(f"Table set: {self._table_id}")

        return self._commit("set_table")

    def set_discount(self, amount: Any) -> OrderSnapshot:
        """Set the order discount (clamped to >= 0)."""
        try:
            discount = round_money(to_decimal(amount))
        except (InvalidOperation, ValueError, TypeError):
            logger.warning(f"Invalid discount: {amount!r}")
            return self._snapshot

        self._discount = max(0.0, discount)
        return self._commit("set_discount")

    def clear(self) -> OrderSnapshot:
        """
        Reset to the empty order and delete the persisted snapshot.

        The key is removed, not overwritten, so nothing is restored after a
        restart.
        """
        self._order_id = None
        self._table_id = None
        self._items = {}
        self._discount = 0.0
        self._status = OrderStatus.CLEARED
        self._snapshot = self._build_snapshot()

        order_mutations.labels(operation="clear").inc()

        if not self.store.remove(self.storage_key):
            order_persist_failures.inc()
            logger.error("Failed to remove persisted order")

        logger.info("Order cleared")
        return self._snapshot

    def restore(self) -> OrderSnapshot:
        """
        Load the persisted order, if any.

        Stored totals are ignored and recomputed from the stored items;
        malformed items are dropped.
        """
        data = self.store.get(self.storage_key)

        if data is None:
            logger.info("No persisted order to restore")
            return self._snapshot

        if not isinstance(data, dict):
            logger.warning(f"Discarding malformed persisted order: {type(data).__name__}")
            return self._snapshot

        items: Dict[str, LineItem] = {}
        for raw_item in data.get("items") or []:
            line = LineItem.from_mapping(raw_item)
            if line is None or line.quantity <= 0:
                logger.warning(f"Dropping malformed stored item: {raw_item!r}")
                continue
            existing = items.get(line.id)
            if existing is not None:
                line = existing.with_quantity(existing.quantity + line.quantity)
            items[line.id] = line

        try:
            discount = max(0.0, round_money(to_decimal(data.get("discount") or 0)))
        except (InvalidOperation, ValueError, TypeError):
            discount = 0.0

        table_id = data.get("table_id")

        self._order_id = data.get("id")
        self._table_id = str(table_id) if table_id is not None else None
        self._items = items
        self._discount = discount
        self._status = OrderStatus.DRAFT
        self._snapshot = self._build_snapshot()

        logger.info(
            f"Restored order: {len(items)} lines, total=${self._snapshot.total:.2f}"
        )
        return self._snapshot

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _build_snapshot(self) -> OrderSnapshot:
        items = tuple(self._items.values())
        subtotal, tax, total = compute_totals(items, self.tax_rate, self._discount)

        return OrderSnapshot(
            id=self._order_id,
            table_id=self._table_id,
            items=items,
            subtotal=subtotal,
            tax=tax,
            discount=self._discount,
            total=total,
            status=self._status
        )

    def _commit(self, operation: str) -> OrderSnapshot:
        """Recompute, persist, and publish the new snapshot."""
        self._status = OrderStatus.DRAFT
        self._snapshot = self._build_snapshot()

        order_mutations.labels(operation=operation).inc()

        if not self.store.set(self.storage_key, self._snapshot.to_dict()):
            order_persist_failures.inc()
            logger.error(f"Failed to persist order after {operation}")

        return self._snapshot

    def __repr__(self):
        return (
            f"<OrderEngine lines={len(self._items)} "
            f"total={self._snapshot.total:.2f} status={self._status.value}>"
        )
