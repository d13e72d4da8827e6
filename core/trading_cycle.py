"""
Trading Cycle - one evaluation pass of the control loop

Runs on every scheduler tick of an active session:

    fetch snapshot -> evaluate -> dedup/cooldown -> size -> open-position check
      -> cooldown recheck -> claim key -> submit/confirm -> record

A cycle is bound to the gates of the session that built it, so a cycle that
outlives its session can never permit or block the next one. Every fault is
caught here and attached to the CycleResult; nothing propagates to the
scheduler.
"""

from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Callable, Optional

from core.exceptions import CycleCancelled, InsufficientFunds, TransientFetchError
from core.execution import ExecutionAdapter
from core.markets import CollateralSpec, MarketTable
from core.models import (
    AnalysisSnapshot,
    CycleResult,
    ExecutionRecord,
    RiskLevel,
    TradeSignal,
)
from core.oracle_client import OracleClient, OracleRequest
from core.risk import RiskSizer
from core.signal_evaluator import SignalEvaluator
from core.trade_limits import CooldownGate, DedupRegistry, ExecutionLedger
from core.venue_client import PerpsVenueClient
from core.wallet import WalletBalanceClient

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionGates:
    """Per-activation derived state. Built fresh on every activation."""
    cooldown: CooldownGate
    dedup: DedupRegistry = field(default_factory=DedupRegistry)
    ledger: Optional[ExecutionLedger] = None

    def __post_init__(self):
        if self.ledger is None:
            self.ledger = ExecutionLedger(self.cooldown)

    @classmethod
    def fresh(cls, min_cooldown_ms: int) -> "SessionGates":
        return cls(cooldown=CooldownGate(min_cooldown_ms))


class TradingCycle:
    """One session's evaluation pipeline."""

    def __init__(self, request: OracleRequest, account: str,
                 oracle: OracleClient, wallet: WalletBalanceClient, venue: Optional[PerpsVenueClient],
                 executor: ExecutionAdapter, markets: MarketTable, gates: SessionGates,
                 collateral: Optional[CollateralSpec] = None,
                 evaluator: Optional[SignalEvaluator] = None,
                 sizer: Optional[RiskSizer] = None,
                 clock_ms: Callable[[], int] = now_ms):
        self.request = request
        self.account = account
        self.oracle = oracle
        self.wallet = wallet
        self.venue = venue
        self.executor = executor
        self.markets = markets
        self.gates = gates
        self.collateral = collateral or markets.collateral(request.stablecoin)
        self.evaluator = evaluator or SignalEvaluator()
        self.sizer = sizer or RiskSizer()
        self.clock_ms = clock_ms

    @property
    def risk_level(self) -> RiskLevel:
        return self.request.risk_level

    @staticmethod
    def _check_cancelled(cancel_token: Optional[threading.Event], stage: str) -> None:
        if cancel_token is not None and cancel_token.is_set():
            raise CycleCancelled(f"cancelled after {stage}")

    def run(self, cycle_id: int, cancel_token: Optional[threading.Event] = None) -> CycleResult:
        started = self.clock_ms()
        result = CycleResult(cycle_id=cycle_id, started_at_ms=started, action="skipped")
        try:
            self._run(result, cancel_token)
        except CycleCancelled as e:
            logger.info(f"[POLL] Cycle {cycle_id} {e}")
            result.action = "cancelled"
            result.reason = "cancelled"
        except TransientFetchError as e:
            logger.warning(f"[POLL] Cycle {cycle_id} abandoned, retrying next tick: {e}")
            result.action = "error"
            result.reason = "fetch-failed"
            result.error = str(e)
        except Exception as e:
            logger.error(f"Cycle {cycle_id} failed: {e}", exc_info=True)
            result.action = "error"
            result.reason = "cycle-error"
            result.error = str(e)
        return result

    def _skip(self, result: CycleResult, reason: str) -> None:
        result.action = "skipped"
        result.reason = reason

    def _run(self, result: CycleResult, cancel_token: Optional[threading.Event]) -> None:
        gates = self.gates

        snapshot: AnalysisSnapshot = self.oracle.analyze(self.request)
        result.snapshot = snapshot
        logger.debug(
            f"[POLL] {snapshot.recommendation.value} confidence={snapshot.confidence} "
            f"score={snapshot.signal_score} price={snapshot.market_price} "
            f"position={snapshot.position_status.value}"
        )
        self._check_cancelled(cancel_token, "oracle fetch")

        decision = self.evaluator.evaluate(snapshot, result.started_at_ms)
        if not decision.execute:
            return self._skip(result, decision.reason)

        key = decision.identity_key
        if gates.dedup.is_claimed(key):
            logger.info(f"Signal {key} already executed, skipping duplicate")
            return self._skip(result, "duplicate")

        if not gates.cooldown.permit(self.clock_ms()):
            remaining = gates.cooldown.remaining_ms(self.clock_ms())
            logger.info(f"[COOLDOWN] Skipping trade - {remaining / 1000:.0f}s remaining in cooldown period")
            return self._skip(result, "cooldown")

        market = self.markets.market(self.request.token)
        if market is None:
            configured = ", ".join(self.markets.tokens())
            logger.warning(f"No market configured for token {self.request.token} (configured: {configured})")
            return self._skip(result, "unknown-market")
        if not self.account:
            logger.warning("No venue account configured, cannot place orders")
            return self._skip(result, "no-account")
        if self.collateral is None:
            logger.warning(f"No collateral asset configured for {self.request.stablecoin}")
            return self._skip(result, "unknown-collateral")

        balance = self.wallet.balance(self.account, self.collateral.address, self.collateral.decimals)
        self._check_cancelled(cancel_token, "balance fetch")

        leverage = self.sizer.leverage(self.risk_level)
        try:
            size = self.sizer.position_size(balance, snapshot.market_price, leverage, market.size_decimals)
        except InsufficientFunds as e:
            logger.info(f"Insufficient {self.collateral.symbol} balance ({balance}), skipping trade: {e}")
            return self._skip(result, "insufficient-funds")

        result.signal = TradeSignal(side=decision.side, size=size, leverage=leverage, identity_key=key)

        if self.venue is not None:
            positions = self.venue.positions(self.account)
            self._check_cancelled(cancel_token, "position fetch")
            if any(p.market_id == market.market_id and p.is_open for p in positions):
                logger.info(f"Position already open on market {market.market_id}, skipping trade execution")
                return self._skip(result, "position-open")

        # Second check right before the venue call
        if not gates.cooldown.permit(self.clock_ms()):
            logger.info("[COOLDOWN] Cooldown engaged while evaluating, skipping trade")
            return self._skip(result, "cooldown")

        self._check_cancelled(cancel_token, "pre-submit checks")
        if not gates.dedup.try_claim(key):
            return self._skip(result, "duplicate")

        logger.info(
            f"[TRADE EXECUTION] {decision.side.value} {self.request.token} size={size} "
            f"leverage={leverage}x key={key}"
        )
        outcome = self.executor.submit(
            decision.side, size, leverage, self.account, market.market_id, identity_key=key,
        )
        record = ExecutionRecord(
            identity_key=key,
            executed_at_ms=self.clock_ms(),
            outcome=outcome.status,
            reason=outcome.reason,
            handle=outcome.receipt.handle if outcome.receipt else None,
        )
        gates.ledger.append(record)

        result.outcome = outcome
        result.record = record
        result.action = "executed" if outcome.success else "failed"
        result.reason = outcome.reason
        result.error = outcome.error
