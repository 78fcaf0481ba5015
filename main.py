"""
POS Terminal Runtime
====================
Composition root: builds every component explicitly, wires them together
and owns start-up and teardown.

Wiring:
- Event hub connected        -> connectivity online
- Event hub gave up          -> connectivity offline
- Connectivity offline→online -> sync manager drains the offline queue
- Order synced               -> hub "order created" notification
"""

import logging
import structlog
from typing import Optional, Dict, Any

from config import Config, load_config, log_configuration_summary
from storage import KeyValueStore, FileStore
from order import OrderEngine
from connectivity import ConnectivityMonitor, ReachabilityProbe
from pos_client import OrderServiceClient
from offline_queue import OfflineQueue, SyncManager, PendingOrder
from event_hub import EventHub, HubEvent, ConnectionState
from checkout import CheckoutCoordinator


logger = structlog.get_logger(__name__)


# ============================================================================
# LOGGING
# ============================================================================

def configure_logging(level: str = "INFO"):
    """Route stdlib and structlog output through one handler."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"]),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# ============================================================================
# TERMINAL
# ============================================================================

class PosTerminal:
    """
    One terminal session.

    Components are public attributes so the status API and tests can reach
    them; nothing here is a module-level singleton.
    """

    def __init__(
        self,
        config: Config,
        store: Optional[KeyValueStore] = None,
        client: Any = None,
        hub: Optional[EventHub] = None
    ):
        self.config = config

        self.store = store if store is not None else FileStore(config.storage.data_dir)

        self.engine = OrderEngine(self.store, tax_rate=config.terminal.tax_rate)
        self.queue = OfflineQueue(self.store, storage_limit=config.offline.storage_limit)
        self.connectivity = ConnectivityMonitor()

        self.client = client if client is not None else OrderServiceClient(
            config.backend.api_url,
            auth_token=config.terminal.auth_token,
            timeout=config.backend.request_timeout,
            health_path=config.backend.health_path
        )

        self.probe = ReachabilityProbe(
            self.connectivity,
            self.client.check_health,
            interval=config.offline.probe_interval
        )

        self.hub = hub if hub is not None else EventHub(
            config.backend.ws_url,
            token=config.terminal.auth_token,
            max_attempts=config.realtime.reconnect_attempts,
            base_delay=config.realtime.reconnect_delay,
            backoff_factor=config.realtime.backoff_factor,
            max_delay=config.realtime.max_reconnect_delay,
            heartbeat_interval=config.realtime.heartbeat_interval
        )

        self.sync = SyncManager(self.queue, self.client, self.connectivity)

        self.checkout = CheckoutCoordinator(
            self.engine,
            self.queue,
            self.client,
            self.connectivity,
            hub=self.hub,
            outlet_id=config.terminal.outlet_id,
            staff_id=config.terminal.staff_id,
            terminal_id=config.terminal.terminal_id,
            offline_enabled=config.features.enable_offline_mode
        )

        self.hub.on(HubEvent.CONNECTION, self._on_hub_connection)
        self.sync.on_synced(self._on_order_synced)

        self._started = False

    # ========================================================================
    # WIRING
    # ========================================================================

    def _on_hub_connection(self, event: Dict[str, Any]):
        status = (event or {}).get("status")

        if status == ConnectionState.CONNECTED.value:
            self.connectivity.report(True)
        elif status == ConnectionState.FAILED.value:
            self.connectivity.report(False)

    async def _on_order_synced(self, pending: PendingOrder, accepted: Dict[str, Any]):
        await self.hub.notify_order_created(accepted)
        logger.info("order_synced", pending_id=pending.id, order_id=accepted.get("id"))

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Restore state, open the event channel, start probing."""
        if self._started:
            return
        self._started = True

        self.engine.restore()

        features = self.config.features

        if features.enable_real_time_updates:
            await self.hub.connect(
                self.config.terminal.outlet_id,
                self.config.terminal.staff_id
            )

        if features.enable_connectivity_probe:
            await self.probe.start()

        if not self.queue.is_empty():
            await self.sync.sync_pending_orders()

        logger.info(
            "terminal_started",
            outlet_id=self.config.terminal.outlet_id,
            pending_orders=len(self.queue),
            restored_items=self.engine.item_count
        )

    async def stop(self):
        """Tear everything down. Safe to call repeatedly."""
        await self.probe.stop()
        await self.hub.cleanup()
        await self.connectivity.wait_idle()

        if self._started:
            await self.client.aclose()
            self._started = False

        logger.info("terminal_stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "outlet_id": self.config.terminal.outlet_id,
            "terminal_id": self.config.terminal.terminal_id,
            "connectivity": self.connectivity.get_status(),
            "hub": self.hub.get_connection_status(),
            "sync": self.sync.get_status(),
            "checkout": self.checkout.get_status(),
            "current_order": self.engine.snapshot().to_dict()
        }


# ============================================================================
# ENTRY POINT
# ============================================================================

def main():
    """Load configuration and serve the terminal status API."""
    import uvicorn
    from server import create_app

    config = load_config()
    configure_logging("DEBUG" if config.features.debug_mode else config.server.log_level)
    log_configuration_summary(config)

    terminal = PosTerminal(config)
    app = create_app(terminal)

    logger.info("server_starting", host=config.server.host, port=config.server.port)

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
