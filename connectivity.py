"""
Connectivity Module
===================
Network reachability signal for the terminal.

State machine: ONLINE ⇄ OFFLINE (initial ONLINE unless reported otherwise).
Listeners are notified only on actual transitions.
"""

import asyncio
import logging
from typing import Optional, Callable, List, Set
from datetime import datetime
from enum import Enum

from prometheus_client import Gauge


logger = logging.getLogger(__name__)


terminal_online = Gauge(
    'pos_terminal_online',
    'Whether the backend is currently reachable (1) or not (0)'
)


class Reachability(Enum):
    """Reachability states."""
    ONLINE = "online"
    OFFLINE = "offline"


class ConnectivityMonitor:
    """
    Tracks backend reachability and notifies listeners on transitions.

    Sources (platform signal, health probe, event channel) call update() or
    report(); repeated reports of the same state are ignored.
    """

    def __init__(self, initially_online: bool = True):
        self._state = Reachability.ONLINE if initially_online else Reachability.OFFLINE
        self._listeners: List[Callable] = []
        self._tasks: Set[asyncio.Task] = set()
        self.last_change: Optional[datetime] = None
        self.transition_count = 0

        terminal_online.set(1 if initially_online else 0)

        logger.info(f"ConnectivityMonitor initialized ({self._state.value})")

    @property
    def state(self) -> Reachability:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state == Reachability.ONLINE

    def on_change(self, callback: Callable):
        """
        Register a transition listener.

        Args:
            callback: Called with the new is_online flag; may be async
        """
        self._listeners.append(callback)

    def off_change(self, callback: Callable):
        if callback in self._listeners:
            self._listeners.remove(callback)

    async def update(self, is_reachable: bool) -> bool:
        """
        Record a reachability observation and await listeners.

        Args:
            is_reachable: Whether the backend is reachable

        Returns:
            True if this caused a transition
        """
        new_state = Reachability.ONLINE if is_reachable else Reachability.OFFLINE

        if new_state == self._state:
            return False

        old_state = self._state
        self._state = new_state
        self.last_change = datetime.utcnow()
        self.transition_count += 1
        terminal_online.set(1 if is_reachable else 0)

        logger.info(f"Connectivity: {old_state.value} → {new_state.value}")

        for listener in list(self._listeners):
            try:
                result = listener(is_reachable)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Error in connectivity listener: {str(e)}",
                    exc_info=True
                )

        return True

    def report(self, is_reachable: bool):
        """
        Fire-and-forget variant of update() for synchronous callers.

        Must be called from within a running event loop.
        """
        task = asyncio.get_running_loop().create_task(self.update(is_reachable))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self):
        """Wait for transitions scheduled through report() to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_status(self) -> dict:
        return {
            "state": self._state.value,
            "is_online": self.is_online,
            "last_change": self.last_change.isoformat() if self.last_change else None,
            "transition_count": self.transition_count
        }

    def __repr__(self):
        return f"<ConnectivityMonitor state={self._state.value}>"


class ReachabilityProbe:
    """
    Background watchdog that polls the backend health endpoint and feeds
    the result into a ConnectivityMonitor.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        check: Callable,
        interval: float = 15.0
    ):
        """
        Args:
            monitor: Monitor to report into
            check: Async callable returning True when the backend is reachable
            interval: Seconds between checks
        """
        self.monitor = monitor
        self.check = check
        self.interval = interval

        self._task: Optional[asyncio.Task] = None
        self._active = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start probing (no-op if already running)."""
        if self.is_running:
            return

        self._active = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Reachability probe started (interval={self.interval}s)")

    async def stop(self):
        """Stop probing (safe to call repeatedly)."""
        self._active = False

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=2.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        self._task = None
        logger.info("Reachability probe stopped")

    async def probe_once(self) -> bool:
        """Run a single check and report it."""
        try:
            reachable = bool(await self.check())
        except Exception as e:
            logger.warning(f"Reachability check failed: {str(e)}")
            reachable = False

        await self.monitor.update(reachable)
        return reachable

    async def _run(self):
        try:
            while self._active:
                await self.probe_once()
                await asyncio.sleep(self.interval)

        except asyncio.CancelledError:
            logger.debug("Reachability probe cancelled")
        except Exception as e:
            logger.error(f"Reachability probe crashed: {str(e)}", exc_info=True)
