"""
Perp Agent Core: Recommendation Oracle Client

HTTP client for the external analysis service. Every session-scoped call
carries the same body: {token, stablecoin, portfolio_amount, risk_level}.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

import requests

from core.api_client import DEFAULT_TIMEOUT_S, JsonApiClient, error_detail
from core.exceptions import TransientFetchError
from core.models import AnalysisSnapshot, RiskLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OracleRequest:
    token: str
    stablecoin: str
    portfolio_amount: float
    risk_level: RiskLevel

    def to_body(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "stablecoin": self.stablecoin,
            "portfolio_amount": self.portfolio_amount,
            "risk_level": self.risk_level.value,
        }


@dataclass(frozen=True)
class PricePoint:
    timestamp: int
    price: float
    date: str = ""


class OracleClient(JsonApiClient):
    """Client for /api/activate, /api/deactivate, /api/analyze and /api/historical."""

    source = "oracle"

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT_S, max_retries: int = 2, **kwargs):
        super().__init__(base_url, timeout=timeout, max_retries=max_retries, **kwargs)

    def _call(self, method: str, endpoint: str, body: Optional[dict] = None,
              query: Optional[Dict[str, Any]] = None) -> Any:
        try:
            return self._req(method, endpoint, body=body, query=query)
        except requests.exceptions.HTTPError as e:
            detail = error_detail(e.response)
            raise TransientFetchError(f"oracle {endpoint}", RuntimeError(detail or str(e)))

    def activate(self, request: OracleRequest) -> Dict[str, Any]:
        logger.info(f"Activating oracle agent for {request.token}/{request.stablecoin} ({request.risk_level.value})")
        return self._call("POST", "/api/activate", body=request.to_body()) or {}

    def deactivate(self, request: OracleRequest) -> Dict[str, Any]:
        logger.info(f"Deactivating oracle agent for {request.token}")
        return self._call("POST", "/api/deactivate", body=request.to_body()) or {}

    def analyze(self, request: OracleRequest) -> AnalysisSnapshot:
        """Fetch the current recommendation. Raises TransientFetchError on any fault."""
        payload = self._call("POST", "/api/analyze", body=request.to_body())
        snapshot = AnalysisSnapshot.from_payload(payload)
        if not snapshot.token:
            snapshot = replace(snapshot, token=request.token)
        return snapshot

    def historical(self, token: str, days: int = 7) -> List[PricePoint]:
        if days < 1:
            raise ValueError(f"days must be >= 1, got {days}")
        payload = self._call("GET", f"/api/historical/{token}", query={"days": days})
        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            raise TransientFetchError(f"oracle /api/historical/{token}", ValueError("missing data list"))
        points = []
        for row in rows:
            try:
                points.append(PricePoint(
                    timestamp=int(row["timestamp"]),
                    price=float(row["price"]),
                    date=str(row.get("date") or ""),
                ))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed history row {row!r}: {e}")
        return points
