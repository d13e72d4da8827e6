"""
Perp Agent Core: Data Model

Typed values that flow through one evaluation cycle:

    AnalysisSnapshot -> Decision -> TradeSignal -> ExecutionOutcome -> ExecutionRecord

Oracle and venue payloads are parsed into these types at the client boundary.
A payload that does not fit the contract raises MalformedResponse instead
of leaking half-parsed dicts into the cycle.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from core.exceptions import MalformedResponse


class Recommendation(Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    HOLD = "HOLD"


class Side(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def is_long(self) -> bool:
        return self is Side.LONG


class RiskLevel(Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class PositionStatus(Enum):
    NONE = "none"
    OPEN = "open"
    CLOSED = "closed"


class OutcomeStatus(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class AnalysisSnapshot:
    """One oracle reading. Used once per poll and never mutated."""
    recommendation: Recommendation
    confidence: float
    signal_score: float
    market_price: Optional[float]
    position_status: PositionStatus = PositionStatus.NONE
    iteration: Optional[int] = None
    timestamp: Optional[str] = None
    action: str = ""
    token: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AnalysisSnapshot":
        """
        Build a snapshot from the oracle's /api/analyze response.

        Raises:
            MalformedResponse: payload is not a mapping or has no valid recommendation
        """
        if not isinstance(payload, Mapping):
            raise MalformedResponse("oracle.analyze", ValueError(f"expected object, got {type(payload).__name__}"))

        raw_rec = str(payload.get("recommendation") or "").strip().upper()
        try:
            recommendation = Recommendation(raw_rec)
        except ValueError:
            raise MalformedResponse("oracle.analyze", ValueError(f"invalid recommendation {raw_rec!r}"))

        market_data = payload.get("market_data") or {}
        price = _optional_float(market_data.get("price")) if isinstance(market_data, Mapping) else None

        position_info = payload.get("position_info") or {}
        raw_status = str(position_info.get("status") or "none").lower() if isinstance(position_info, Mapping) else "none"
        try:
            position_status = PositionStatus(raw_status)
        except ValueError:
            position_status = PositionStatus.NONE

        execution_signal = payload.get("execution_signal") or {}
        action = ""
        if isinstance(execution_signal, Mapping):
            action = str(execution_signal.get("action") or "")

        iteration = payload.get("iteration")
        if iteration is not None:
            try:
                iteration = int(iteration)
            except (TypeError, ValueError):
                iteration = None

        timestamp = payload.get("timestamp")

        return cls(
            recommendation=recommendation,
            confidence=_optional_float(payload.get("confidence")) or 0.0,
            signal_score=_optional_float(payload.get("signal_score")) or 0.0,
            market_price=price,
            position_status=position_status,
            iteration=iteration,
            timestamp=str(timestamp) if timestamp else None,
            action=action,
            token=str(payload.get("token") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendation": self.recommendation.value,
            "confidence": self.confidence,
            "signal_score": self.signal_score,
            "market_price": self.market_price,
            "position_status": self.position_status.value,
            "iteration": self.iteration,
            "timestamp": self.timestamp,
            "action": self.action,
            "token": self.token,
        }


@dataclass(frozen=True)
class Decision:
    """SignalEvaluator verdict: execute on `side`, or skip for `reason`."""
    execute: bool
    reason: str = ""
    side: Optional[Side] = None
    identity_key: Optional[str] = None

    @classmethod
    def skip(cls, reason: str) -> "Decision":
        return cls(execute=False, reason=reason)

    @classmethod
    def execute_on(cls, side: Side, identity_key: str) -> "Decision":
        return cls(execute=True, reason="actionable", side=side, identity_key=identity_key)


@dataclass(frozen=True)
class TradeSignal:
    side: Side
    size: str  # decimal string at the asset's precision
    leverage: int
    identity_key: str


@dataclass(frozen=True)
class OrderReceipt:
    """
    Opaque venue handle for a placed order.

    `settled` marks a venue that answered the placement itself with a bare
    `true`: the order is already final and has no status to poll.
    """
    handle: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)
    settled: bool = False

    @classmethod
    def from_payload(cls, payload: Any, handle_hint: Optional[str] = None) -> "OrderReceipt":
        """
        Extract the settlement handle from an openLong/openShort response.

        A bare `true` body is a settled receipt keyed by `handle_hint`
        (the client order id) since the venue returns no handle of its own.

        Raises:
            MalformedResponse: no recognizable handle in the response
        """
        if payload is True:
            return cls(handle=handle_hint or "settled", raw={"success": True}, settled=True)
        if isinstance(payload, Mapping):
            data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
            for key in ("orderId", "order_id", "hash", "txHash", "transactionHash", "trade_id"):
                value = data.get(key)
                if value:
                    return cls(handle=str(value), raw=dict(payload))
        raise MalformedResponse("venue.order_receipt", ValueError(f"no order handle in {payload!r}"))


@dataclass(frozen=True)
class Position:
    market_id: int
    side: Side
    size: float
    entry_price: float = 0.0
    leverage: float = 0.0

    @classmethod
    def from_payload(cls, payload: Any) -> "Position":
        if not isinstance(payload, Mapping):
            raise MalformedResponse("venue.positions", ValueError(f"position is not an object: {payload!r}"))
        try:
            market_id = int(payload["market_id"])
            size = float(payload.get("size") or 0)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedResponse("venue.positions", exc)
        trade_side = payload.get("trade_side")
        if isinstance(trade_side, str):
            side = Side.LONG if trade_side.lower() in ("long", "true", "buy") else Side.SHORT
        else:
            side = Side.LONG if trade_side else Side.SHORT
        return cls(
            market_id=market_id,
            side=side,
            size=size,
            entry_price=_optional_float(payload.get("entry_price")) or 0.0,
            leverage=_optional_float(payload.get("leverage")) or 0.0,
        )

    @property
    def is_open(self) -> bool:
        return self.size > 0


def parse_positions(payload: Any) -> List[Position]:
    """Parse a getPositions response (bare list or wrapped in `data`)."""
    if isinstance(payload, Mapping):
        payload = payload.get("data", payload.get("positions"))
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise MalformedResponse("venue.positions", ValueError(f"expected list, got {type(payload).__name__}"))
    return [Position.from_payload(item) for item in payload]


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one ExecutionAdapter.submit call."""
    status: OutcomeStatus
    receipt: Optional[OrderReceipt] = None
    reason: str = ""
    error: Optional[str] = None

    @classmethod
    def confirmed(cls, receipt: OrderReceipt) -> "ExecutionOutcome":
        return cls(status=OutcomeStatus.CONFIRMED, receipt=receipt, reason="confirmed")

    @classmethod
    def failed(cls, reason: str, error: Optional[str] = None,
               receipt: Optional[OrderReceipt] = None) -> "ExecutionOutcome":
        return cls(status=OutcomeStatus.FAILED, receipt=receipt, reason=reason, error=error)

    @property
    def success(self) -> bool:
        return self.status is OutcomeStatus.CONFIRMED

    @property
    def needs_manual_verification(self) -> bool:
        return self.status is OutcomeStatus.FAILED and self.reason == "timeout"


@dataclass(frozen=True)
class ExecutionRecord:
    identity_key: str
    executed_at_ms: int
    outcome: OutcomeStatus
    reason: str = ""
    handle: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_key": self.identity_key,
            "executed_at_ms": self.executed_at_ms,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "handle": self.handle,
        }


@dataclass
class CycleResult:
    """What one evaluation cycle did. Emitted to session subscribers."""
    cycle_id: int
    started_at_ms: int
    action: str  # "executed" | "skipped" | "failed" | "error" | "cancelled"
    reason: str = ""
    snapshot: Optional[AnalysisSnapshot] = None
    signal: Optional[TradeSignal] = None
    outcome: Optional[ExecutionOutcome] = None
    record: Optional[ExecutionRecord] = None
    error: Optional[str] = None

    @property
    def recommendation(self) -> Optional[str]:
        return self.snapshot.recommendation.value if self.snapshot else None

    @property
    def confidence(self) -> Optional[float]:
        return self.snapshot.confidence if self.snapshot else None

    def to_event(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "recommendation": self.recommendation,
            "confidence": self.confidence,
            "action": self.action,
            "reason": self.reason,
            "execution_outcome": self.outcome.status.value if self.outcome else None,
            "error": self.error,
        }
