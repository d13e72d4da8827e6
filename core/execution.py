"""
Perp Agent Core: Execution Adapter

Turns one TradeSignal into exactly one venue order and waits a bounded time
for the venue to confirm it.

Never raises for venue faults: every path ends in an ExecutionOutcome,
Confirmed(receipt) or Failed(reason). Failure reasons:
- rejected:     venue refused the order
- unreachable:  venue could not be reached, order certainly not placed
- malformed:    venue answered without a usable order handle
- timeout:      order may exist but was never confirmed; verify manually

Includes deterministic client order ID generation so venue logs can be tied
back to the signal that produced the order.
"""

import hashlib
import logging
import time
from typing import Callable, Optional

from core.exceptions import (
    ConfirmationTimeout,
    MalformedResponse,
    SubmissionRejected,
    TransientFetchError,
)
from core.models import ExecutionOutcome, OrderReceipt, Side
from core.venue_client import PerpsVenueClient

logger = logging.getLogger(__name__)

EXECUTION_MODES = ("DRY_RUN", "LIVE")


class ExecutionAdapter:
    """
    Submit -> confirm driver over a PerpsVenueClient.

    Modes:
    - DRY_RUN: log the order and synthesise a confirmed receipt, no venue call
    - LIVE: real orders
    """

    def __init__(self, venue: Optional[PerpsVenueClient], mode: str = "DRY_RUN",
                 confirm_timeout_s: float = 30.0, confirm_poll_s: float = 2.0,
                 client_order_prefix: str = "perpagent",
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        mode = (mode or "").upper()
        if mode not in EXECUTION_MODES:
            raise ValueError(f"Invalid execution mode {mode!r}, expected one of {EXECUTION_MODES}")
        if mode == "LIVE" and venue is None:
            raise ValueError("LIVE mode requires a venue client")
        if confirm_timeout_s <= 0:
            raise ValueError(f"confirm_timeout_s must be > 0, got {confirm_timeout_s}")
        if confirm_poll_s <= 0:
            raise ValueError(f"confirm_poll_s must be > 0, got {confirm_poll_s}")

        self.venue = venue
        self.mode = mode
        self.confirm_timeout_s = float(confirm_timeout_s)
        self.confirm_poll_s = float(confirm_poll_s)
        self.client_order_prefix = self._sanitize_client_prefix(client_order_prefix)
        self._clock = clock
        self._sleep = sleep

        logger.info(
            f"Initialized ExecutionAdapter (mode={mode}, confirm_timeout={self.confirm_timeout_s}s, "
            f"client_prefix={self.client_order_prefix})"
        )

    @staticmethod
    def _sanitize_client_prefix(prefix: str) -> str:
        """Ensure client order prefix is lowercase and ASCII-safe."""

        allowed = []
        for char in (prefix or "").strip():
            if char.isalnum() or char in {"-", "_"}:
                allowed.append(char.lower())
            elif char.isspace():
                allowed.append("_")
        sanitized = "".join(allowed).strip("_")
        return sanitized or "perpagent"

    def generate_client_order_id(self, identity_key: str) -> str:
        """
        Deterministic client order ID for a signal identity key.

        Format: "<prefix>_coid_" + 16 hex chars of sha256(identity_key).
        """
        hash_hex = hashlib.sha256(identity_key.encode("utf-8")).hexdigest()[:16]
        return f"{self.client_order_prefix}_coid_{hash_hex}"

    def submit(self, side: Side, size: str, leverage: int, account: str, market_id: int,
               identity_key: Optional[str] = None) -> ExecutionOutcome:
        """
        Place one order and wait for confirmation.

        Args:
            side: LONG or SHORT
            size: Decimal string at the market's size precision
            leverage: Venue leverage
            account: Venue account / wallet address
            market_id: Venue market id
            identity_key: Signal identity, used for the client order id

        Returns:
            ExecutionOutcome; never raises for venue faults
        """
        client_order_id = self.generate_client_order_id(identity_key or f"{market_id}-{side.value}-{size}")
        logger.info(
            f"[TRADE EXECUTION] Opening {side.value} market={market_id} size={size} "
            f"leverage={leverage}x coid={client_order_id} mode={self.mode}"
        )

        if self.mode == "DRY_RUN":
            receipt = OrderReceipt(handle=f"dryrun-{client_order_id}", raw={"dry_run": True})
            logger.info(f"DRY_RUN: would open {side.value} {size} on market {market_id}")
            return ExecutionOutcome.confirmed(receipt)

        try:
            receipt = self.venue.open_position(
                side=side,
                market_id=market_id,
                address=account,
                leverage=leverage,
                size=size,
                client_order_id=client_order_id,
            )
        except SubmissionRejected as e:
            logger.error(f"[TRADE EXECUTION] Order rejected by venue: {e}")
            return ExecutionOutcome.failed("rejected", str(e))
        except ConfirmationTimeout as e:
            logger.error(
                f"[TRADE EXECUTION] Order submission timed out, placement unknown "
                f"(coid={client_order_id}); verify position manually: {e}"
            )
            return ExecutionOutcome.failed("timeout", str(e))
        except MalformedResponse as e:
            logger.error(f"[TRADE EXECUTION] Venue response carried no order handle: {e}")
            return ExecutionOutcome.failed("malformed", str(e))
        except TransientFetchError as e:
            logger.warning(f"[TRADE EXECUTION] Venue unreachable, order not placed: {e}")
            return ExecutionOutcome.failed("unreachable", str(e))

        if receipt.settled:
            logger.info(f"[TRADE EXECUTION] Order {receipt.handle} settled on placement")
            return ExecutionOutcome.confirmed(receipt)
        return self._await_confirmation(receipt, market_id)

    def _await_confirmation(self, receipt: OrderReceipt, market_id: int) -> ExecutionOutcome:
        started = self._clock()
        deadline = started + self.confirm_timeout_s

        while True:
            try:
                status = self.venue.order_status(market_id, receipt.handle)
            except TransientFetchError as e:
                logger.debug(f"Order status lookup failed for {receipt.handle}: {e}")
                status = "pending"

            if status == "confirmed":
                waited = self._clock() - started
                logger.info(f"[TRADE EXECUTION] Order {receipt.handle} confirmed after {waited:.1f}s")
                return ExecutionOutcome.confirmed(receipt)
            if status == "rejected":
                logger.error(f"[TRADE EXECUTION] Order {receipt.handle} rejected after placement")
                return ExecutionOutcome.failed("rejected", f"order {receipt.handle} rejected", receipt)

            now = self._clock()
            if now >= deadline:
                timeout = ConfirmationTimeout(receipt.handle, now - started)
                logger.error(
                    f"[TRADE EXECUTION] {timeout}; position must be verified on the venue"
                )
                return ExecutionOutcome.failed("timeout", str(timeout), receipt)
            self._sleep(min(self.confirm_poll_s, max(0.0, deadline - now)))
