"""
Perp Agent Core: Wallet Balance Lookup

Reads the collateral balance held by the venue account. The service returns
raw base units; they are scaled by the collateral asset's decimals here.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import requests

from core.api_client import DEFAULT_TIMEOUT_S, JsonApiClient, error_detail
from core.exceptions import TransientFetchError

logger = logging.getLogger(__name__)

USDC_DECIMALS = 6


def _raw_amount(payload: Any) -> Any:
    if isinstance(payload, Mapping):
        for key in ("data", "amount", "balance"):
            if key in payload:
                return _raw_amount(payload[key])
        raise ValueError(f"no amount in {payload!r}")
    return payload


class WalletBalanceClient(JsonApiClient):
    source = "wallet"

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT_S, max_retries: int = 2, **kwargs):
        super().__init__(base_url, timeout=timeout, max_retries=max_retries, **kwargs)

    def balance(self, account: str, asset_address: str, decimals: int = USDC_DECIMALS) -> float:
        """Balance of `asset_address` held by `account`, in whole asset units."""
        try:
            payload = self._req(
                "GET",
                "/getTokenAmountOwnedByAccount",
                query={"userAddress": account, "tokenAddress": asset_address},
            )
        except requests.exceptions.HTTPError as e:
            raise TransientFetchError("wallet balance", RuntimeError(error_detail(e.response) or str(e)))

        try:
            raw = Decimal(str(_raw_amount(payload)))
        except (InvalidOperation, ValueError) as e:
            raise TransientFetchError("wallet balance", e)
        if not raw.is_finite() or raw < 0:
            raise TransientFetchError("wallet balance", ValueError(f"invalid amount {raw}"))

        balance = float(raw.scaleb(-decimals))
        logger.debug(f"Wallet {account[:10]}... holds {balance} (raw={raw}, decimals={decimals})")
        return balance
