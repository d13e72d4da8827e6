"""
Perp Agent Core: Perpetual Futures Venue Client

HTTP client for the venue's /api/v1/perps routes. Signing and settlement
happen on the venue side; this client only places orders, reads their
status and lists positions.

Order placement is sent exactly once. A POST that times out after the
request left the machine may still have placed the order, so it surfaces as
ConfirmationTimeout rather than being retried.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

import requests

from core.api_client import DEFAULT_TIMEOUT_S, JsonApiClient, error_detail
from core.exceptions import (
    ConfirmationTimeout,
    MalformedResponse,
    SubmissionRejected,
    TransientFetchError,
)
from core.models import OrderReceipt, Position, Side, parse_positions

logger = logging.getLogger(__name__)

PERPS_PREFIX = "/api/v1/perps"

# Venue order status -> confirmation state
ORDER_STATUS_MAP = {
    "filled": "confirmed",
    "confirmed": "confirmed",
    "executed": "confirmed",
    "success": "confirmed",
    "completed": "confirmed",
    "open": "confirmed",
    "rejected": "rejected",
    "failed": "rejected",
    "cancelled": "rejected",
    "canceled": "rejected",
    "expired": "rejected",
}


def map_order_status(raw_status: Optional[str]) -> str:
    """Normalize a venue status string to confirmed | rejected | pending."""
    if not raw_status:
        return "pending"
    return ORDER_STATUS_MAP.get(str(raw_status).strip().lower(), "pending")


class PerpsVenueClient(JsonApiClient):
    source = "venue"

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT_S, max_retries: int = 3, **kwargs):
        headers = dict(kwargs.pop("headers", None) or {})
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        super().__init__(base_url, timeout=timeout, max_retries=max_retries, headers=headers, **kwargs)

    def open_position(self, side: Side, market_id: int, address: str, leverage: int,
                      size: str, client_order_id: Optional[str] = None) -> OrderReceipt:
        """
        Place one market order opening a position.

        Raises:
            SubmissionRejected: venue refused the order
            ConfirmationTimeout: request sent but no response (order may exist)
            TransientFetchError: venue unreachable, order certainly not placed
            MalformedResponse: response carries no order handle
        """
        route = "/openLong" if side.is_long else "/openShort"
        body: Dict[str, Any] = {
            "marketId": market_id,
            "address": address,
            "leverage": leverage,
            "size": size,
        }
        if client_order_id:
            body["clientOrderId"] = client_order_id

        try:
            payload = self._req("POST", PERPS_PREFIX + route, body=body, max_retries=1)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise SubmissionRejected(error_detail(e.response) or str(e), status_code=status)
        except MalformedResponse:
            raise
        except TransientFetchError as e:
            original = e.original
            if isinstance(original, requests.exceptions.HTTPError):
                status = original.response.status_code if original.response is not None else None
                raise SubmissionRejected(error_detail(original.response) or str(original), status_code=status)
            if isinstance(original, requests.exceptions.ReadTimeout):
                raise ConfirmationTimeout(None, self.timeout)
            raise

        if payload is False:
            raise SubmissionRejected("order refused")
        if isinstance(payload, Mapping) and payload.get("success") is False:
            raise SubmissionRejected(str(payload.get("error") or payload.get("message") or "order refused"))

        return OrderReceipt.from_payload(payload, handle_hint=client_order_id)

    def order_status(self, market_id: int, order_id: str) -> str:
        """confirmed | rejected | pending for a previously placed order."""
        try:
            payload = self._req(
                "GET",
                PERPS_PREFIX + "/getOrderStatusByOrderId",
                query={"marketId": market_id, "orderId": order_id},
            )
        except requests.exceptions.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                # Not indexed yet
                return "pending"
            raise TransientFetchError("venue order status", e)

        if isinstance(payload, Mapping):
            data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
            return map_order_status(data.get("status") or data.get("state"))
        return map_order_status(str(payload))

    def positions(self, address: str) -> List[Position]:
        try:
            payload = self._req("GET", PERPS_PREFIX + "/getPositions", query={"address": address})
        except requests.exceptions.HTTPError as e:
            raise TransientFetchError("venue positions", e)
        return parse_positions(payload)

    def order_history(self, address: str) -> List[Dict[str, Any]]:
        try:
            payload = self._req("GET", PERPS_PREFIX + "/getOrderHistory", query={"address": address})
        except requests.exceptions.HTTPError as e:
            raise TransientFetchError("venue order history", e)
        if isinstance(payload, Mapping):
            payload = payload.get("data", [])
        if not isinstance(payload, list):
            raise MalformedResponse("venue order history", ValueError(f"expected list, got {type(payload).__name__}"))
        return payload

    def deposit(self, address: str, amount: float) -> Dict[str, Any]:
        if amount <= 0:
            raise ValueError(f"deposit amount must be > 0, got {amount}")
        try:
            payload = self._req("POST", PERPS_PREFIX + "/deposit",
                                body={"amount": amount, "userAddress": address}, max_retries=1)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise SubmissionRejected(error_detail(e.response) or str(e), status_code=status)
        logger.info(f"Deposited {amount} for {address[:10]}...")
        return payload if isinstance(payload, dict) else {"data": payload}
