"""
POS Order Service Client
========================
Async HTTP client for the remote order submission endpoint.

Any failure (transport error, timeout, non-2xx, unreadable body) surfaces
as SubmissionError; callers only distinguish success from failure.
"""

import logging
from typing import Dict, Any, Optional

import httpx


logger = logging.getLogger(__name__)


ORDERS_PATH = "/api/pos/orders"


class SubmissionError(Exception):
    """Remote order submission failed (network-class failure)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


WIRE_NAMES = {
    "table_id": "tableId",
    "payment_method": "paymentMethod",
    "cash_received": "cashReceived",
    "outlet_id": "outletId",
    "staff_id": "staffId",
    "terminal_id": "terminalId",
    "client_order_id": "clientOrderId",
    "offline_timestamp": "offlineTimestamp",
}

# Local lifecycle fields the backend does not accept
LOCAL_ONLY_FIELDS = {"status"}


def build_order_payload(
    order: Dict[str, Any],
    **metadata: Any
) -> Dict[str, Any]:
    """
    Convert a stored order dict into the backend's wire shape.

    Args:
        order: Order dict (snake_case as produced by OrderSnapshot, or
            already camelCase)
        **metadata: Extra fields (client_order_id, offline_timestamp, ...)

    Returns:
        camelCase payload for POST /api/pos/orders
    """
    payload: Dict[str, Any] = {}

    for key, value in {**order, **metadata}.items():
        if key in LOCAL_ONLY_FIELDS:
            continue
        if value is None and key not in ("id", "table_id", "tableId"):
            continue
        if key == "items":
            value = [dict(item) for item in value or []]
        payload[WIRE_NAMES.get(key, key)] = value

    return payload


class OrderServiceClient:
    """Client for the remote POS order service."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
        health_path: str = "/health",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"

        self.base_url = base_url.rstrip("/")
        self.health_path = health_path

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport
        )

        self.submit_count = 0
        self.error_count = 0

        logger.info(f"OrderServiceClient initialized for {self.base_url}")

    async def submit_order(
        self,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Submit an order.

        Args:
            payload: Order payload (see build_order_payload)
            idempotency_key: Stable key for replays of the same order

        Returns:
            Accepted order record (with backend-assigned id)

        Raises:
            SubmissionError: On any failure
        """
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = await self._client.post(ORDERS_PATH, json=payload, headers=headers)
            response.raise_for_status()
            accepted = response.json()

        except httpx.HTTPStatusError as e:
            self.error_count += 1
            status = e.response.status_code
            logger.error(f"Order submission rejected: HTTP {status}")
            raise SubmissionError(f"Order service returned HTTP {status}", status_code=status)

        except httpx.HTTPError as e:
            self.error_count += 1
            logger.error(f"Order submission failed: {type(e).__name__}: {str(e)}")
            raise SubmissionError(f"Order service unreachable: {str(e)}")

        except ValueError as e:
            self.error_count += 1
            logger.error(f"Order service returned unreadable body: {str(e)}")
            raise SubmissionError("Order service returned an unreadable response")

        if isinstance(accepted, dict) and isinstance(accepted.get("data"), dict):
            accepted = accepted["data"]

        if not isinstance(accepted, dict):
            self.error_count += 1
            raise SubmissionError("Order service returned an unexpected response")

        self.submit_count += 1
        logger.info(f"Order accepted by backend: {accepted.get('id')}")

        return accepted

    async def check_health(self) -> bool:
        """Return True if the backend health endpoint answers 2xx."""
        try:
            response = await self._client.get(self.health_path)
            return response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {str(e)}")
            return False

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def get_stats(self) -> dict:
        return {
            "base_url": self.base_url,
            "submit_count": self.submit_count,
            "error_count": self.error_count
        }
