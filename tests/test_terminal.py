import asyncio

import pytest

from config import load_config
from event_hub import EventHub, ConnectionState
from main import PosTerminal
from offline_queue import OfflineQueue
from storage import CURRENT_ORDER_KEY
from fakes import wait_until


@pytest.fixture
def config(env):
    env.setenv("ENABLE_CONNECTIVITY_PROBE", "false")
    env.setenv("POS_WS_RECONNECT_ATTEMPTS", "1")
    env.setenv("POS_WS_RECONNECT_DELAY", "0.01")
    return load_config()


def make_terminal(config, store, client, transports):
    hub = EventHub(
        config.backend.ws_url,
        token="tok",
        transport_factory=transports,
        max_attempts=config.realtime.reconnect_attempts,
        base_delay=config.realtime.reconnect_delay,
    )
    return PosTerminal(config, store=store, client=client, hub=hub)


def test_start_restores_order_and_connects(config, store, client, transports):
    store.set(CURRENT_ORDER_KEY, {
        "table_id": "t5",
        "items": [{"id": "m1", "name": "Burger", "price": 10.0, "quantity": 1}],
    })
    terminal = make_terminal(config, store, client, transports)

    async def run():
        await terminal.start()
        status = terminal.get_status()
        await terminal.stop()
        return status

    status = asyncio.run(run())

    assert status["current_order"]["table_id"] == "t5"
    assert status["current_order"]["total"] == 11.0
    assert status["hub"]["state"] == "connected"
    assert transports.created[0].handshake["outletId"] == "outlet_1"
    assert terminal.hub.state == ConnectionState.DISCONNECTED
    assert client.closed


def test_pending_orders_sync_on_start_and_notify_hub(config, store, client, transports):
    OfflineQueue(store).add_pending_order({"table_id": "t1", "items": [], "total": 0})
    terminal = make_terminal(config, store, client, transports)

    async def run():
        await terminal.start()
        sent = list(transports.latest.sent)
        await terminal.stop()
        return sent

    sent = asyncio.run(run())

    assert terminal.queue.is_empty()
    assert [event for event, _ in sent] == ["order:create"]
    assert sent[0][1]["id"] == "order_1"


def test_hub_giving_up_marks_terminal_offline(config, store, client, transports):
    transports.refuse_all = True
    terminal = make_terminal(config, store, client, transports)

    async def run():
        await terminal.start()
        await wait_until(lambda: terminal.hub.state == ConnectionState.FAILED)
        await terminal.connectivity.wait_idle()
        online = terminal.connectivity.is_online
        await terminal.stop()
        return online

    assert asyncio.run(run()) is False


def test_offline_checkout_then_probe_recovery(config, store, client, transports):
    transports.refuse_all = True
    terminal = make_terminal(config, store, client, transports)

    async def run():
        await terminal.start()
        await wait_until(lambda: terminal.hub.state == ConnectionState.FAILED)
        await terminal.connectivity.wait_idle()

        terminal.engine.add_item({"id": "m1", "name": "Burger", "price": 10.0})
        terminal.engine.set_table("t1")
        queued = await terminal.checkout.checkout("cash", 20)

        await terminal.probe.probe_once()
        await terminal.stop()
        return queued

    queued = asyncio.run(run())

    assert queued.outcome.value == "queued"
    assert queued.change_due == 9.0
    assert client.calls[0][1] == queued.order_id
    assert terminal.queue.is_empty()
    assert terminal.connectivity.is_online


def test_stop_is_idempotent(config, store, client, transports):
    terminal = make_terminal(config, store, client, transports)

    async def run():
        await terminal.start()
        await terminal.stop()
        await terminal.stop()

    asyncio.run(run())

    assert terminal.hub.state == ConnectionState.DISCONNECTED
