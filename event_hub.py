"""
Real-time Event Hub
===================
Single logical connection to the backend event channel.

Responsibilities:
- Connection state machine with hub-owned bounded reconnect
- Translation of wire message names into a closed set of HubEvents
- Ordered, failure-isolated dispatch to registered listeners
- Re-subscription after every (re)connect
- Best-effort outbound notifications (dropped when not connected)
- Liveness heartbeat while connected

State flow:
    DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTED
                                           RECONNECTING -> FAILED (retries exhausted)
    any -> DISCONNECTED (disconnect / cleanup)
"""

import json
import asyncio
import structlog
from typing import Optional, Dict, Any, Callable, List, Tuple, Set, Union
from datetime import datetime
from enum import Enum

from prometheus_client import Counter, Gauge
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed


logger = structlog.get_logger(__name__)


CLIENT_TYPE = "pos"


# ============================================================================
# METRICS
# ============================================================================

hub_connected = Gauge(
    'pos_hub_connected',
    'Event channel connected (1) or not (0)'
)
hub_events = Counter(
    'pos_hub_events_total',
    'Inbound events dispatched by the hub',
    ['event']
)
hub_reconnect_attempts = Counter(
    'pos_hub_reconnect_attempts_total',
    'Event channel reconnect attempts'
)


# ============================================================================
# STATES & EVENTS
# ============================================================================

class ConnectionState(Enum):
    """Event channel connection states (owned by the hub)."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"               # Retries exhausted (terminal until connect())


class HubEvent(Enum):
    """Application-level events; the only names listeners ever see."""
    CONNECTION = "connection"

    ORDER_CREATED = "orderCreated"
    ORDER_UPDATED = "orderUpdated"
    ORDER_STATUS_CHANGED = "orderStatusChanged"
    ORDER_CANCELLED = "orderCancelled"

    KITCHEN_ORDER_READY = "kitchenOrderReady"
    KITCHEN_ORDER_PREPARING = "kitchenOrderPreparing"
    KITCHEN_ITEM_READY = "kitchenItemReady"
    KITCHEN_DELAY_NOTIFICATION = "kitchenDelayNotification"

    TABLE_STATUS_CHANGED = "tableStatusChanged"
    TABLE_OCCUPIED = "tableOccupied"
    TABLE_FREED = "tableFreed"
    TABLE_CALL_WAITER = "tableCallWaiter"

    PAYMENT_COMPLETED = "paymentCompleted"
    PAYMENT_FAILED = "paymentFailed"
    PAYMENT_REFUNDED = "paymentRefunded"

    INVENTORY_LOW_STOCK = "inventoryLowStock"
    INVENTORY_OUT_OF_STOCK = "inventoryOutOfStock"
    INVENTORY_UPDATED = "inventoryUpdated"

    STAFF_SHIFT_CHANGE = "staffShiftChange"
    STAFF_BREAK_REMINDER = "staffBreakReminder"

    SYSTEM_NOTIFICATION = "systemNotification"
    SYSTEM_ALERT = "systemAlert"
    SYSTEM_MAINTENANCE = "systemMaintenance"

    ANALYTICS_UPDATE = "analyticsUpdate"


# Inbound wire name -> application event (1:1)
WIRE_EVENTS: Dict[str, HubEvent] = {
    "order:created": HubEvent.ORDER_CREATED,
    "order:updated": HubEvent.ORDER_UPDATED,
    "order:status_changed": HubEvent.ORDER_STATUS_CHANGED,
    "order:cancelled": HubEvent.ORDER_CANCELLED,
    "kitchen:order_ready": HubEvent.KITCHEN_ORDER_READY,
    "kitchen:order_preparing": HubEvent.KITCHEN_ORDER_PREPARING,
    "kitchen:item_ready": HubEvent.KITCHEN_ITEM_READY,
    "kitchen:delay_notification": HubEvent.KITCHEN_DELAY_NOTIFICATION,
    "table:status_changed": HubEvent.TABLE_STATUS_CHANGED,
    "table:occupied": HubEvent.TABLE_OCCUPIED,
    "table:freed": HubEvent.TABLE_FREED,
    "table:call_waiter": HubEvent.TABLE_CALL_WAITER,
    "payment:completed": HubEvent.PAYMENT_COMPLETED,
    "payment:failed": HubEvent.PAYMENT_FAILED,
    "payment:refunded": HubEvent.PAYMENT_REFUNDED,
    "inventory:low_stock": HubEvent.INVENTORY_LOW_STOCK,
    "inventory:out_of_stock": HubEvent.INVENTORY_OUT_OF_STOCK,
    "inventory:updated": HubEvent.INVENTORY_UPDATED,
    "staff:shift_change": HubEvent.STAFF_SHIFT_CHANGE,
    "staff:break_reminder": HubEvent.STAFF_BREAK_REMINDER,
    "system:notification": HubEvent.SYSTEM_NOTIFICATION,
    "system:alert": HubEvent.SYSTEM_ALERT,
    "system:maintenance": HubEvent.SYSTEM_MAINTENANCE,
    "analytics:real_time_update": HubEvent.ANALYTICS_UPDATE,
}


# ============================================================================
# TRANSPORT
# ============================================================================

class TransportClosed(Exception):
    """The transport session ended."""
    pass


class Transport:
    """
    One transport session to the event channel.

    A new instance is created for every connection attempt.
    """

    async def open(self, url: str, handshake: Dict[str, Any]):
        raise NotImplementedError

    async def send(self, event: str, data: Any):
        raise NotImplementedError

    async def receive(self) -> Tuple[str, Any]:
        """Next inbound (wire_event, data); raises TransportClosed at end."""
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class WebSocketTransport(Transport):
    """
    JSON-over-websocket transport.

    Frames are {"event": name, "data": payload}. The handshake is sent as
    the first frame ("auth") and the token also travels as a bearer header.
    """

    def __init__(self, open_timeout: float = 20.0):
        self.open_timeout = open_timeout
        self._ws = None

    async def open(self, url: str, handshake: Dict[str, Any]):
        headers = {}
        if handshake.get("token"):
            headers["Authorization"] = f"Bearer {handshake['token']}"

        self._ws = await ws_connect(
            url,
            additional_headers=headers,
            open_timeout=self.open_timeout
        )
        try:
            await self.send("auth", handshake)
        except BaseException:
            await self.close()
            raise

    async def send(self, event: str, data: Any):
        if self._ws is None:
            raise TransportClosed("not open")
        try:
            await self._ws.send(json.dumps({"event": event, "data": data}))
        except ConnectionClosed as e:
            raise TransportClosed(str(e))

    async def receive(self) -> Tuple[str, Any]:
        if self._ws is None:
            raise TransportClosed("not open")

        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosed as e:
                raise TransportClosed(str(e))

            try:
                message = json.loads(raw)
            except (ValueError, TypeError):
                logger.warning("ws_malformed_frame", size=len(raw))
                continue

            if not isinstance(message, dict) or not isinstance(message.get("event"), str):
                logger.warning("ws_frame_without_event")
                continue

            return message["event"], message.get("data")

    async def close(self):
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()


# ============================================================================
# EVENT HUB
# ============================================================================

class EventHub:
    """
    Publish/subscribe client for live kitchen, table, order and inventory
    events.

    Constructed once per terminal session by the composition root.
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        transport_factory: Callable[[], Transport] = WebSocketTransport,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        backoff_factor: float = 2.0,
        max_delay: float = 30.0,
        heartbeat_interval: float = 30.0
    ):
        self.url = url
        self.token = token
        self.transport_factory = transport_factory

        # Reconnect policy
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.heartbeat_interval = heartbeat_interval

        self.outlet_id: Optional[str] = None
        self.staff_id: Optional[str] = None

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._run_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._listener_tasks: Set[asyncio.Task] = set()

        # Bumped by disconnect(); an open that straddles it is discarded
        self._generation = 0

        self._listeners: Dict[HubEvent, List[Callable]] = {}
        self._subscriptions: Dict[str, Tuple[str, Dict[str, Any]]] = {}

        # Tracking
        self.reconnect_attempts = 0
        self.sessions_opened = 0
        self.heartbeats_sent = 0
        self.connected_at: Optional[datetime] = None

        hub_connected.set(0)

    # ========================================================================
    # STATE
    # ========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._transport is not None

    def _set_state(self, new_state: ConnectionState, **details):
        old_state = self._state
        self._state = new_state
        hub_connected.set(1 if new_state == ConnectionState.CONNECTED else 0)

        logger.info(
            "hub_state_transition",
            from_state=old_state.value,
            to_state=new_state.value,
            **details
        )

        self._emit(HubEvent.CONNECTION, {"status": new_state.value, **details})

    def _backoff_delay(self, attempt: int) -> float:
        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay)

    def _handshake(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "outletId": self.outlet_id,
            "staffId": self.staff_id,
            "clientType": CLIENT_TYPE
        }

    # ========================================================================
    # CONNECTION LIFECYCLE
    # ========================================================================

    async def connect(self, outlet_id: str, staff_id: str) -> bool:
        """
        Open the event channel session.

        A call while a session is active (connecting, connected or
        reconnecting) is a no-op.

        Returns:
            True if connected after the first attempt (otherwise the hub keeps
            retrying in the background)
        """
        if self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING
        ):
            logger.warning("hub_already_connected", state=self._state.value)
            return self.is_connected

        self.outlet_id = outlet_id
        self.staff_id = staff_id
        self.reconnect_attempts = 0

        self._set_state(ConnectionState.CONNECTING, outlet_id=outlet_id)

        generation = self._generation
        connected = await self._open_session()

        if generation != self._generation:
            logger.info("hub_connect_superseded", outlet_id=outlet_id)
            return False

        if not connected:
            self._set_state(ConnectionState.RECONNECTING, reason="connect_failed")

        self._run_task = asyncio.create_task(self._run(connected))
        return connected

    async def _open_session(self) -> bool:
        """Open one transport session; on success enter CONNECTED."""
        generation = self._generation
        transport = self.transport_factory()

        try:
            await transport.open(self.url, self._handshake())
        except asyncio.CancelledError:
            await self._close_quietly(transport)
            raise
        except Exception as e:
            logger.warning(
                "hub_connect_error",
                error=str(e),
                attempt=self.reconnect_attempts
            )
            await self._close_quietly(transport)
            self._emit(HubEvent.CONNECTION, {"status": "error", "error": str(e)})
            return False

        if generation != self._generation:
            # disconnect() ran while the session was opening
            await self._close_quietly(transport)
            return False

        self._transport = transport
        self.sessions_opened += 1
        self.connected_at = datetime.utcnow()

        attempts = self.reconnect_attempts
        self.reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTED, attempts=attempts)

        await self._replay_subscriptions()
        self._start_heartbeat()
        return True

    async def _run(self, connected: bool):
        """Background reader and reconnect loop."""
        try:
            while True:
                if connected:
                    reason = await self._read_loop()
                    self._stop_heartbeat()
                    await self._close_transport()
                    self._set_state(ConnectionState.RECONNECTING, reason=reason)

                connected = await self._reconnect()
                if not connected:
                    self._set_state(
                        ConnectionState.FAILED,
                        attempts=self.reconnect_attempts
                    )
                    return

        except asyncio.CancelledError:
            logger.debug("hub_run_cancelled")
        except Exception as e:
            logger.error("hub_run_crashed", error=str(e), exc_info=True)
            self._stop_heartbeat()
            await self._close_transport()
            self._set_state(ConnectionState.FAILED, error=str(e))

    async def _reconnect(self) -> bool:
        """Bounded retry; True once a session is re-established."""
        while self.reconnect_attempts < self.max_attempts:
            self.reconnect_attempts += 1
            hub_reconnect_attempts.inc()

            delay = self._backoff_delay(self.reconnect_attempts)
            logger.info(
                "hub_reconnect_scheduled",
                attempt=self.reconnect_attempts,
                max_attempts=self.max_attempts,
                delay=delay
            )
            await asyncio.sleep(delay)

            if await self._open_session():
                return True

        logger.error("hub_reconnect_gave_up", attempts=self.reconnect_attempts)
        return False

    async def _read_loop(self) -> str:
        """Dispatch inbound messages until the session ends."""
        while True:
            try:
                wire_event, data = await self._transport.receive()
            except TransportClosed as e:
                logger.warning("hub_transport_closed", reason=str(e))
                return "transport_closed"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("hub_receive_error", error=str(e), exc_info=True)
                return "receive_error"

            self._dispatch_wire(wire_event, data)

    async def _close_transport(self):
        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_quietly(transport)

    @staticmethod
    async def _close_quietly(transport: Transport):
        try:
            await transport.close()
        except Exception as e:
            logger.debug("hub_transport_close_error", error=str(e))

    async def disconnect(self, reason: str = "client"):
        """Close the session and stop reconnecting. Safe to call repeatedly."""
        self._generation += 1

        current = asyncio.current_task()
        heartbeat = self._stop_heartbeat()

        task, self._run_task = self._run_task, None
        if task and not task.done() and task is not current:
            task.cancel()

        for pending in (heartbeat, task):
            if pending is None or pending is current:
                continue
            try:
                await pending
            except asyncio.CancelledError:
                pass

        await self._close_transport()
        self.reconnect_attempts = 0

        if self._state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED, reason=reason)

    async def cleanup(self):
        """
        Tear the hub down: close the session, cancel pending async listeners,
        detach all listeners and forget subscriptions. Idempotent.
        """
        await self.disconnect(reason="cleanup")

        current = asyncio.current_task()
        pending = [t for t in self._listener_tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._listeners.clear()
        self._subscriptions.clear()

        logger.info("hub_cleaned_up")

    # ========================================================================
    # LISTENERS & DISPATCH
    # ========================================================================

    @staticmethod
    def _coerce_event(event: Union[HubEvent, str]) -> Optional[HubEvent]:
        if isinstance(event, HubEvent):
            return event
        try:
            return HubEvent(event)
        except ValueError:
            logger.warning("hub_unknown_event_name", hub_event=event)
            return None

    def on(self, event: Union[HubEvent, str], handler: Callable):
        """Register a listener; listeners run in registration order."""
        hub_event = self._coerce_event(event)
        if hub_event is None:
            return
        self._listeners.setdefault(hub_event, []).append(handler)

    def off(self, event: Union[HubEvent, str], handler: Callable):
        """Remove a listener (no-op if not registered)."""
        hub_event = self._coerce_event(event)
        handlers = self._listeners.get(hub_event) if hub_event else None
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: Union[HubEvent, str]) -> int:
        hub_event = self._coerce_event(event)
        return len(self._listeners.get(hub_event, [])) if hub_event else 0

    def _dispatch_wire(self, wire_event: str, data: Any):
        event = WIRE_EVENTS.get(wire_event)
        if event is None:
            logger.debug("hub_unmapped_wire_event", wire_event=wire_event)
            return

        hub_events.labels(event=event.value).inc()
        self._emit(event, data)

    def _emit(self, event: HubEvent, data: Any):
        """Invoke listeners in order; a failing listener never stops the rest."""
        for handler in list(self._listeners.get(event, [])):
            try:
                result = handler(data)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(
                        lambda done, hub_event=event: self._listener_done(hub_event, done)
                    )
            except Exception as e:
                logger.error(
                    "hub_listener_error",
                    hub_event=event.value,
                    error=str(e),
                    exc_info=True
                )

    def _listener_done(self, event: HubEvent, task: asyncio.Task):
        self._listener_tasks.discard(task)
        if task.cancelled():
            return

        error = task.exception()
        if error is not None:
            logger.error(
                "hub_listener_error",
                hub_event=event.value,
                error=str(error),
                exc_info=error
            )

    # ========================================================================
    # OUTBOUND
    # ========================================================================

    async def _send(self, event: str, data: Dict[str, Any]) -> bool:
        """Best-effort send; never raises, never queues."""
        if not self.is_connected:
            logger.debug("hub_send_skipped", wire_event=event, state=self._state.value)
            return False

        try:
            await self._transport.send(event, data)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("hub_send_failed", wire_event=event, error=str(e))
            return False

    def _context(self, **data) -> Dict[str, Any]:
        return {
            **data,
            "outletId": self.outlet_id,
            "staffId": self.staff_id,
            "timestamp": datetime.utcnow().isoformat()
        }

    async def notify_order_created(self, order_data: Dict[str, Any]) -> bool:
        return await self._send("order:create", dict(order_data))

    async def notify_order_status_change(
        self,
        order_id: str,
        status: str,
        notes: str = ""
    ) -> bool:
        return await self._send(
            "order:status_change",
            self._context(orderId=order_id, status=status, notes=notes)
        )

    async def notify_kitchen_order_ready(self, order_id: str, items: List[Any] = None) -> bool:
        return await self._send(
            "kitchen:order_ready",
            self._context(orderId=order_id, items=list(items or []))
        )

    async def notify_table_status_change(
        self,
        table_id: str,
        status: str,
        order_id: Optional[str] = None
    ) -> bool:
        return await self._send(
            "table:status_change",
            self._context(tableId=table_id, status=status, orderId=order_id)
        )

    async def notify_table_call_waiter(
        self,
        table_id: str,
        request_type: str = "assistance"
    ) -> bool:
        return await self._send(
            "table:call_waiter",
            self._context(tableId=table_id, requestType=request_type)
        )

    async def notify_payment_completed(self, payment_data: Dict[str, Any]) -> bool:
        return await self._send("payment:completed", self._context(**payment_data))

    async def notify_inventory_usage(self, items: List[Any]) -> bool:
        return await self._send("inventory:usage", self._context(items=list(items)))

    async def notify_staff_activity(self, activity: str, data: Dict[str, Any] = None) -> bool:
        return await self._send(
            "staff:activity",
            self._context(activity=activity, data=dict(data or {}))
        )

    # ========================================================================
    # SUBSCRIPTIONS (replayed after every reconnect)
    # ========================================================================

    def _subscription_payload(self, extra: Dict[str, Any]) -> Dict[str, Any]:
        return {"outletId": self.outlet_id, **extra}

    async def _subscribe(self, key: str, wire_event: str, extra: Dict[str, Any] = None) -> bool:
        extra = dict(extra or {})
        self._subscriptions[key] = (wire_event, extra)
        return await self._send(wire_event, self._subscription_payload(extra))

    async def _replay_subscriptions(self):
        for key, (wire_event, extra) in list(self._subscriptions.items()):
            sent = await self._send(wire_event, self._subscription_payload(extra))
            logger.debug("hub_subscription_replayed", subscription=key, sent=sent)

    async def subscribe_to_order_updates(self, order_id: str) -> bool:
        return await self._subscribe(f"order:{order_id}", "subscribe:order", {"orderId": order_id})

    async def unsubscribe_from_order_updates(self, order_id: str) -> bool:
        self._subscriptions.pop(f"order:{order_id}", None)
        return await self._send("unsubscribe:order", {"orderId": order_id})

    async def subscribe_to_kitchen_updates(self) -> bool:
        return await self._subscribe("kitchen", "subscribe:kitchen")

    async def subscribe_to_table_updates(self) -> bool:
        return await self._subscribe("tables", "subscribe:tables")

    async def subscribe_to_inventory_updates(self) -> bool:
        return await self._subscribe("inventory", "subscribe:inventory")

    async def subscribe_to_staff_updates(self) -> bool:
        return await self._subscribe("staff", "subscribe:staff")

    async def subscribe_to_analytics(self) -> bool:
        return await self._subscribe("analytics", "subscribe:analytics")

    @property
    def subscriptions(self) -> List[str]:
        return list(self._subscriptions.keys())

    # ========================================================================
    # HEARTBEAT
    # ========================================================================

    def _start_heartbeat(self):
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> Optional[asyncio.Task]:
        """Cancel the heartbeat; returns the task so callers may await it."""
        task, self._heartbeat_task = self._heartbeat_task, None
        if task and not task.done():
            task.cancel()
        return task

    async def _heartbeat_loop(self):
        try:
            while True:
                await asyncio.sleep(self.heartbeat_interval)
                if await self._send("heartbeat", self._context()):
                    self.heartbeats_sent += 1

        except asyncio.CancelledError:
            pass

    # ========================================================================
    # STATUS
    # ========================================================================

    def get_connection_status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "connected": self.is_connected,
            "reconnect_attempts": self.reconnect_attempts,
            "outlet_id": self.outlet_id,
            "staff_id": self.staff_id,
            "subscriptions": self.subscriptions,
            "heartbeats_sent": self.heartbeats_sent,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None
        }

    def __repr__(self):
        return f"<EventHub state={self._state.value} url={self.url}>"
