import asyncio

from structlog.testing import capture_logs

from event_hub import EventHub, HubEvent, ConnectionState, WIRE_EVENTS
from fakes import TransportFactory, wait_until


def make_hub(transports, **kwargs):
    options = dict(
        token="tok",
        transport_factory=transports,
        max_attempts=3,
        base_delay=0.01,
        backoff_factor=2.0,
        max_delay=0.05,
        heartbeat_interval=60.0,
    )
    options.update(kwargs)
    return EventHub("ws://hub.test", **options)


def test_wire_names_map_one_to_one():
    assert len(set(WIRE_EVENTS.values())) == len(WIRE_EVENTS)
    assert HubEvent.CONNECTION not in WIRE_EVENTS.values()


def test_connect_sends_handshake_once(transports):
    hub = make_hub(transports)
    statuses = []
    hub.on(HubEvent.CONNECTION, lambda event: statuses.append(event["status"]))

    async def run():
        assert await hub.connect("outlet_1", "staff_7") is True
        assert await hub.connect("outlet_1", "staff_7") is True
        assert hub.state == ConnectionState.CONNECTED
        await hub.cleanup()

    asyncio.run(run())

    assert len(transports.created) == 1
    assert transports.created[0].handshake == {
        "token": "tok",
        "outletId": "outlet_1",
        "staffId": "staff_7",
        "clientType": "pos",
    }
    assert statuses == ["connecting", "connected", "disconnected"]


def test_inbound_events_are_translated_and_ordered(transports):
    hub = make_hub(transports)
    received = []

    def broken(data):
        raise RuntimeError("listener bug")

    hub.on(HubEvent.KITCHEN_ORDER_READY, broken)
    hub.on(HubEvent.KITCHEN_ORDER_READY, lambda data: received.append(("ready", data)))
    hub.on(HubEvent.TABLE_FREED, lambda data: received.append(("freed", data)))

    async def run():
        await hub.connect("outlet_1", "staff_7")
        transport = transports.latest
        transport.push("kitchen:order_ready", {"orderId": "o1"})
        transport.push("made:up_event", {"x": 1})
        transport.push("table:freed", {"tableId": "t4"})
        await wait_until(lambda: len(received) == 2)
        await hub.cleanup()

    asyncio.run(run())

    assert received == [("ready", {"orderId": "o1"}), ("freed", {"tableId": "t4"})]


def test_async_listeners_are_scheduled(transports):
    hub = make_hub(transports)
    received = []

    async def listener(data):
        received.append(data)

    hub.on(HubEvent.ORDER_UPDATED, listener)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        transports.latest.push("order:updated", {"id": "o1"})
        await wait_until(lambda: received == [{"id": "o1"}])
        await hub.cleanup()

    asyncio.run(run())


def test_on_accepts_event_values_and_ignores_unknown_names(transports):
    hub = make_hub(transports)
    handler = lambda data: None

    hub.on("tableFreed", handler)
    hub.on("table:freed", handler)

    assert hub.listener_count(HubEvent.TABLE_FREED) == 1

    hub.off(HubEvent.TABLE_FREED, handler)
    assert hub.listener_count(HubEvent.TABLE_FREED) == 0


def test_notify_dropped_when_not_connected(transports):
    hub = make_hub(transports)

    async def run():
        return await hub.notify_order_status_change("o1", "ready")

    assert asyncio.run(run()) is False
    assert transports.created == []


def test_notify_sends_when_connected(transports):
    hub = make_hub(transports)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        assert await hub.notify_table_call_waiter("t2") is True
        assert await hub.notify_order_created({"id": "o1"}) is True
        await hub.cleanup()

    asyncio.run(run())

    sent = transports.created[0].sent
    assert [event for event, _ in sent] == ["table:call_waiter", "order:create"]
    assert sent[0][1]["tableId"] == "t2"
    assert sent[0][1]["requestType"] == "assistance"
    assert sent[0][1]["outletId"] == "outlet_1"
    assert sent[1][1] == {"id": "o1"}


def test_reconnect_replays_subscriptions(transports):
    hub = make_hub(transports)
    connection_events = []
    hub.on(HubEvent.CONNECTION, connection_events.append)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        await hub.subscribe_to_kitchen_updates()
        await hub.subscribe_to_order_updates("o1")
        await hub.subscribe_to_table_updates()
        await hub.unsubscribe_from_order_updates("o1")

        first = transports.latest
        first.drop()

        await wait_until(
            lambda: len(transports.opened) == 2 and hub.state == ConnectionState.CONNECTED
        )
        await hub.cleanup()
        return first

    first = asyncio.run(run())
    second = transports.opened[1]

    assert first.closed
    assert second.sent_events() == ["subscribe:kitchen", "subscribe:tables"]
    assert second.sent[0][1] == {"outletId": "outlet_1"}
    assert {"status": "reconnecting", "reason": "transport_closed"} in connection_events
    assert {"status": "connected", "attempts": 1} in connection_events


def test_retries_are_bounded_and_end_in_failed(transports):
    hub = make_hub(transports, max_attempts=3)
    statuses = []
    hub.on(HubEvent.CONNECTION, lambda event: statuses.append(event["status"]))

    async def run():
        await hub.connect("outlet_1", "staff_7")
        transports.refuse_all = True
        transports.latest.drop()
        await wait_until(lambda: hub.state == ConnectionState.FAILED)
        await asyncio.sleep(0.1)
        await hub.cleanup()

    asyncio.run(run())

    assert len(transports.created) == 1 + 3
    assert statuses.count("error") == 3
    assert "failed" in statuses


def test_initial_connect_failure_keeps_retrying():
    transports = TransportFactory(refusals=2)
    hub = make_hub(transports, max_attempts=5)

    async def run():
        assert await hub.connect("outlet_1", "staff_7") is False
        assert hub.state == ConnectionState.RECONNECTING
        await wait_until(lambda: hub.state == ConnectionState.CONNECTED)
        await hub.cleanup()

    asyncio.run(run())

    assert len(transports.created) == 3


def test_backoff_is_capped(transports):
    hub = make_hub(transports, base_delay=1.0, backoff_factor=2.0, max_delay=5.0)

    assert [hub._backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_disconnect_stops_reconnecting(transports):
    hub = make_hub(transports, base_delay=0.05, max_attempts=10)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        transports.refuse_all = True
        transports.latest.drop()
        await wait_until(lambda: hub.state == ConnectionState.RECONNECTING)
        await hub.disconnect()
        created = len(transports.created)
        await asyncio.sleep(0.2)
        return created

    created = asyncio.run(run())

    assert hub.state == ConnectionState.DISCONNECTED
    assert len(transports.created) == created


def test_heartbeat_while_connected(transports):
    hub = make_hub(transports, heartbeat_interval=0.01)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        await wait_until(lambda: hub.heartbeats_sent >= 2)
        await hub.cleanup()

    asyncio.run(run())

    assert "heartbeat" in transports.created[0].sent_events()


def test_cleanup_is_idempotent_and_detaches_listeners(transports):
    hub = make_hub(transports)
    hub.on(HubEvent.ORDER_CREATED, lambda data: None)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        await hub.subscribe_to_inventory_updates()
        await hub.cleanup()
        await hub.cleanup()

    asyncio.run(run())

    assert hub.state == ConnectionState.DISCONNECTED
    assert hub.listener_count(HubEvent.ORDER_CREATED) == 0
    assert hub.subscriptions == []
    assert transports.created[0].closed


def test_connection_status(transports):
    hub = make_hub(transports)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        await hub.subscribe_to_staff_updates()
        status = hub.get_connection_status()
        await hub.cleanup()
        return status

    status = asyncio.run(run())

    assert status["state"] == "connected"
    assert status["connected"] is True
    assert status["outlet_id"] == "outlet_1"
    assert status["subscriptions"] == ["staff"]


def test_disconnect_while_opening_wins():
    transports = TransportFactory(open_delay=0.05)
    hub = make_hub(transports, heartbeat_interval=0.01)

    async def run():
        connecting = asyncio.create_task(hub.connect("outlet_1", "staff_7"))
        await asyncio.sleep(0.01)
        await hub.disconnect()
        result = await connecting
        await asyncio.sleep(0.05)
        return result

    assert asyncio.run(run()) is False

    assert hub.state == ConnectionState.DISCONNECTED
    assert not hub.is_connected
    assert transports.created[0].closed
    assert transports.created[0].sent == []
    assert hub._run_task is None
    assert hub._heartbeat_task is None
    assert len(transports.created) == 1


def test_refused_session_is_closed():
    transports = TransportFactory(refusals=1)
    hub = make_hub(transports)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        await wait_until(lambda: hub.state == ConnectionState.CONNECTED)
        await hub.cleanup()

    asyncio.run(run())

    refused, accepted = transports.created
    assert refused.closed
    assert refused.handshake is None
    assert accepted.closed


def test_async_listener_errors_are_logged(transports):
    hub = make_hub(transports)
    received = []

    async def broken(data):
        raise RuntimeError("async listener bug")

    async def listener(data):
        received.append(data)

    hub.on(HubEvent.ORDER_CANCELLED, broken)
    hub.on(HubEvent.ORDER_CANCELLED, listener)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        transports.latest.push("order:cancelled", {"id": "o1"})
        await wait_until(lambda: received == [{"id": "o1"}])
        await asyncio.sleep(0.01)
        await hub.cleanup()

    with capture_logs() as logs:
        asyncio.run(run())

    errors = [entry for entry in logs if entry["event"] == "hub_listener_error"]
    assert len(errors) == 1
    assert errors[0]["hub_event"] == "orderCancelled"
    assert errors[0]["error"] == "async listener bug"
    assert hub._listener_tasks == set()


def test_cleanup_cancels_pending_async_listeners(transports):
    hub = make_hub(transports)
    cancelled = []

    async def slow(data):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(data)
            raise

    hub.on(HubEvent.SYSTEM_ALERT, slow)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        transports.latest.push("system:alert", {"level": "high"})
        await wait_until(lambda: len(hub._listener_tasks) == 1)
        await asyncio.sleep(0.01)
        await hub.cleanup()

    asyncio.run(run())

    assert cancelled == [{"level": "high"}]
    assert hub._listener_tasks == set()


def test_disconnect_waits_for_heartbeat_to_stop(transports):
    hub = make_hub(transports, heartbeat_interval=0.01)

    async def run():
        await hub.connect("outlet_1", "staff_7")
        heartbeat = hub._heartbeat_task
        await hub.disconnect()
        return heartbeat

    heartbeat = asyncio.run(run())

    assert heartbeat.done()
    assert hub._heartbeat_task is None
