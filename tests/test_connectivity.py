import asyncio

from connectivity import ConnectivityMonitor, ReachabilityProbe, Reachability


def test_starts_online_by_default():
    monitor = ConnectivityMonitor()

    assert monitor.is_online
    assert monitor.state == Reachability.ONLINE


def test_listeners_fire_only_on_transitions():
    monitor = ConnectivityMonitor()
    seen = []
    monitor.on_change(seen.append)

    async def run():
        await monitor.update(True)
        await monitor.update(False)
        await monitor.update(False)
        await monitor.update(True)

    asyncio.run(run())

    assert seen == [False, True]
    assert monitor.transition_count == 2


def test_async_listener_is_awaited_and_errors_isolated():
    monitor = ConnectivityMonitor(initially_online=False)
    seen = []

    def broken(is_online):
        raise RuntimeError("boom")

    async def listener(is_online):
        await asyncio.sleep(0)
        seen.append(is_online)

    monitor.on_change(broken)
    monitor.on_change(listener)

    assert asyncio.run(monitor.update(True)) is True
    assert seen == [True]


def test_off_change_detaches_listener():
    monitor = ConnectivityMonitor()
    seen = []
    monitor.on_change(seen.append)
    monitor.off_change(seen.append)

    asyncio.run(monitor.update(False))

    assert seen == []


def test_report_schedules_update():
    monitor = ConnectivityMonitor()

    async def run():
        monitor.report(False)
        await monitor.wait_idle()

    asyncio.run(run())

    assert not monitor.is_online


def test_probe_feeds_monitor():
    monitor = ConnectivityMonitor()
    healthy = {"value": False}

    async def check():
        return healthy["value"]

    probe = ReachabilityProbe(monitor, check, interval=60)

    async def run():
        assert await probe.probe_once() is False
        assert not monitor.is_online
        healthy["value"] = True
        assert await probe.probe_once() is True

    asyncio.run(run())

    assert monitor.is_online


def test_probe_check_exception_counts_as_unreachable():
    monitor = ConnectivityMonitor()

    async def check():
        raise OSError("network down")

    asyncio.run(ReachabilityProbe(monitor, check).probe_once())

    assert not monitor.is_online


def test_probe_start_stop_is_idempotent():
    monitor = ConnectivityMonitor()
    calls = []

    async def check():
        calls.append(1)
        return True

    probe = ReachabilityProbe(monitor, check, interval=0.01)

    async def run():
        await probe.start()
        await probe.start()
        await asyncio.sleep(0.05)
        await probe.stop()
        await probe.stop()

    asyncio.run(run())

    assert not probe.is_running
    assert len(calls) >= 1
