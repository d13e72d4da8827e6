"""
Perp Agent Core: Risk Sizing

Maps the session's risk level to venue leverage and turns the wallet balance
into an order size at the market's size precision.

Leverage is handed to the venue as-is; it is never multiplied into the size.
Rounding works on the decimal string so a size never needs more decimal places
than the market allows and never drifts across the precision boundary the way
binary float rounding can.
"""

import logging
import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from core.exceptions import InsufficientFunds, TransientFetchError
from core.models import RiskLevel

logger = logging.getLogger(__name__)

LEVERAGE_BY_RISK = {
    RiskLevel.CONSERVATIVE: 1,
    RiskLevel.MODERATE: 2,
    RiskLevel.AGGRESSIVE: 4,
}

MIN_TRADABLE_BALANCE = 1.0


class RiskSizer:
    """Pure leverage and position-size calculations."""

    def __init__(self, min_balance: float = MIN_TRADABLE_BALANCE):
        self.min_balance = min_balance

    @staticmethod
    def leverage(risk_level: Union[RiskLevel, str]) -> int:
        """Fixed table: conservative 1x, moderate 2x, aggressive 4x."""
        if not isinstance(risk_level, RiskLevel):
            risk_level = RiskLevel(str(risk_level).lower())
        return LEVERAGE_BY_RISK[risk_level]

    def position_size(self, wallet_balance: float, price: float, leverage: int,
                      asset_precision: int) -> str:
        """
        Size an order from the collateral balance.

        Args:
            wallet_balance: Collateral balance in collateral-asset units
            price: Asset price in collateral units
            leverage: Venue leverage (validated, not applied to size)
            asset_precision: Decimal places the market accepts

        Returns:
            Size as a decimal string with exactly `asset_precision` places

        Raises:
            InsufficientFunds: balance below the tradable minimum, or too small
                for one size increment at this price
            TransientFetchError: price missing or not positive, balance not
                finite, or a size too large to represent
        """
        if wallet_balance is None or wallet_balance < self.min_balance:
            raise InsufficientFunds(wallet_balance or 0.0, self.min_balance)
        if leverage < 1:
            raise ValueError(f"leverage must be >= 1, got {leverage}")
        if asset_precision < 0:
            raise ValueError(f"asset_precision must be >= 0, got {asset_precision}")

        try:
            price_dec = Decimal(str(price))
        except (InvalidOperation, TypeError, ValueError):
            raise TransientFetchError("snapshot.market_price", ValueError(f"unparseable price {price!r}"))
        if not price_dec.is_finite() or price_dec <= 0:
            raise TransientFetchError("snapshot.market_price", ValueError(f"non-positive price {price!r}"))

        if not math.isfinite(wallet_balance):
            raise TransientFetchError("wallet balance", ValueError(f"non-finite balance {wallet_balance!r}"))

        whole_balance = Decimal(math.floor(wallet_balance))
        raw_size = whole_balance / price_dec
        quantum = Decimal(1).scaleb(-asset_precision)
        try:
            size = raw_size.quantize(quantum, rounding=ROUND_HALF_UP)
        except InvalidOperation as e:
            # Size needs more digits than the decimal context holds
            raise TransientFetchError("position size", e)
        if size <= 0:
            # Balance buys less than one size increment at this price
            raise InsufficientFunds(wallet_balance, self.min_balance)

        logger.debug(
            f"Sized order: floor({wallet_balance})={whole_balance} / {price_dec} "
            f"= {raw_size} -> {size} (precision={asset_precision}, leverage={leverage}x)"
        )
        return format(size, "f")
