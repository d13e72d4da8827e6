"""
Perp Agent Core: Signal Evaluation

Turns an oracle snapshot into a canonical decision. Pure: no clock reads,
no I/O, no state. Dedup and cooldown live in core.trade_limits.
"""

import logging
from typing import Optional

from core.models import AnalysisSnapshot, Decision, PositionStatus, Recommendation, Side

logger = logging.getLogger(__name__)


def build_identity_key(snapshot: AnalysisSnapshot, side: Side, poll_time_ms: Optional[int] = None) -> str:
    """
    Deterministic key for the underlying signal.

    Uses the oracle iteration when present, else its timestamp, else the
    poll time. Two polls that see the same iteration and side collapse to
    the same key.
    """
    if snapshot.iteration is not None:
        origin = str(snapshot.iteration)
    elif snapshot.timestamp:
        origin = snapshot.timestamp
    else:
        origin = str(poll_time_ms if poll_time_ms is not None else "")
    return f"{origin}-{side.value}-{snapshot.action or ''}"


class SignalEvaluator:
    """Maps AnalysisSnapshot -> EXECUTE(side) | SKIP(reason)."""

    def evaluate(self, snapshot: AnalysisSnapshot, poll_time_ms: Optional[int] = None) -> Decision:
        # Never pyramid into an existing position, whatever the oracle says
        if snapshot.position_status is PositionStatus.OPEN:
            logger.info("Position already open, skipping trade execution")
            return Decision.skip("position-open")

        if snapshot.recommendation is Recommendation.HOLD:
            logger.debug("Recommendation is HOLD, skipping trade execution")
            return Decision.skip("hold")

        side = Side(snapshot.recommendation.value)
        key = build_identity_key(snapshot, side, poll_time_ms)
        return Decision.execute_on(side, key)
