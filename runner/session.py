"""
Perp Agent Runner: Session State Machine

    Inactive --activate--> Active --deactivate--> Inactive

One AgentSession per agent instance. Every activation builds fresh derived
state (dedup registry, cooldown gate, execution ledger, scheduler); nothing
survives a deactivation except the last snapshot and cycle result, which stay
queryable for the dashboard.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple, Union

from core.exceptions import AgentError, TransientFetchError, ValidationError
from core.execution import ExecutionAdapter
from core.markets import MarketTable, canonical_token
from core.models import AnalysisSnapshot, CycleResult, ExecutionRecord, RiskLevel
from core.oracle_client import OracleClient, OracleRequest
from core.risk import RiskSizer
from core.trade_limits import DEFAULT_MIN_COOLDOWN_MS
from core.trading_cycle import SessionGates, TradingCycle, now_ms
from core.venue_client import PerpsVenueClient
from core.wallet import WalletBalanceClient
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import CycleStats, MetricsRecorder
from runner.scheduler import CancellationToken, PollingScheduler

logger = logging.getLogger(__name__)

PRICE_HISTORY_POINTS = 60
PRICE_HISTORY_MIN_SPACING_MS = 1000


class SessionStatus(Enum):
    INACTIVE = "Inactive"
    ACTIVE = "Active"


@dataclass(frozen=True)
class SessionConfig:
    """Activation parameters. Validated before any state changes."""
    token: str
    portfolio_amount: float
    risk_level: RiskLevel = RiskLevel.MODERATE
    collateral_asset: str = "USDC"
    account: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SessionConfig":
        """Build and validate from a plain mapping (CLI / YAML)."""
        risk_raw = raw.get("risk_level", RiskLevel.MODERATE.value)
        try:
            risk_level = risk_raw if isinstance(risk_raw, RiskLevel) else RiskLevel(str(risk_raw).strip().lower())
        except ValueError:
            raise ValidationError(
                f"risk_level must be one of {[r.value for r in RiskLevel]}, got {risk_raw!r}"
            )
        try:
            amount = float(raw.get("portfolio_amount", 0))
        except (TypeError, ValueError):
            raise ValidationError(f"portfolio_amount must be a number, got {raw.get('portfolio_amount')!r}")

        config = cls(
            token=str(raw.get("token") or ""),
            portfolio_amount=amount,
            risk_level=risk_level,
            collateral_asset=str(raw.get("collateral_asset") or raw.get("stablecoin") or "USDC"),
            account=str(raw.get("account") or ""),
        )
        config.validate()
        return config

    def validate(self) -> None:
        errors = []
        if not canonical_token(self.token):
            errors.append("token must be non-empty")
        if not self.portfolio_amount or self.portfolio_amount <= 0:
            errors.append(f"portfolio_amount must be > 0, got {self.portfolio_amount}")
        if not isinstance(self.risk_level, RiskLevel):
            errors.append(f"risk_level must be a RiskLevel, got {self.risk_level!r}")
        if not self.collateral_asset:
            errors.append("collateral_asset must be non-empty")
        if errors:
            raise ValidationError("; ".join(errors))

    def oracle_request(self) -> OracleRequest:
        return OracleRequest(
            token=canonical_token(self.token),
            stablecoin=self.collateral_asset.upper(),
            portfolio_amount=self.portfolio_amount,
            risk_level=self.risk_level,
        )


class PriceHistory:
    """Last N market prices; a point under 1s after the previous one replaces it."""

    def __init__(self, max_points: int = PRICE_HISTORY_POINTS,
                 min_spacing_ms: int = PRICE_HISTORY_MIN_SPACING_MS):
        self._points: Deque[Tuple[int, float]] = deque(maxlen=max_points)
        self.min_spacing_ms = min_spacing_ms
        self._lock = threading.Lock()

    def add(self, timestamp_ms: int, price: Optional[float]) -> None:
        if price is None or price <= 0:
            return
        with self._lock:
            if self._points and timestamp_ms - self._points[-1][0] < self.min_spacing_ms:
                self._points[-1] = (timestamp_ms, price)
            else:
                self._points.append((timestamp_ms, price))

    def points(self) -> List[Tuple[int, float]]:
        with self._lock:
            return list(self._points)

    def clear(self) -> None:
        with self._lock:
            self._points.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)


Subscriber = Callable[[CycleResult], None]


class AgentSession:
    """Owns the active session, its gates and its scheduler."""

    def __init__(self, oracle: OracleClient, wallet: WalletBalanceClient,
                 venue: Optional[PerpsVenueClient], executor: ExecutionAdapter,
                 markets: Optional[MarketTable] = None,
                 poll_interval_s: float = 5.0,
                 min_cooldown_ms: int = DEFAULT_MIN_COOLDOWN_MS,
                 default_account: str = "",
                 metrics: Optional[MetricsRecorder] = None,
                 alerts: Optional[AlertService] = None,
                 clock_ms: Callable[[], int] = now_ms,
                 scheduler_factory: Callable[..., PollingScheduler] = PollingScheduler):
        self.oracle = oracle
        self.wallet = wallet
        self.venue = venue
        self.executor = executor
        self.markets = markets or MarketTable()
        self.poll_interval_s = poll_interval_s
        self.min_cooldown_ms = min_cooldown_ms
        self.default_account = default_account
        self.metrics = metrics
        self.alerts = alerts
        self.clock_ms = clock_ms
        self._scheduler_factory = scheduler_factory

        self._lock = threading.RLock()
        self._status = SessionStatus.INACTIVE
        self._config: Optional[SessionConfig] = None
        self._generation = 0
        self._gates: Optional[SessionGates] = None
        self._cycle: Optional[TradingCycle] = None
        self._scheduler: Optional[PollingScheduler] = None
        self._cancel: Optional[CancellationToken] = None
        self._cycle_seq = 0

        self._snapshot: Optional[AnalysisSnapshot] = None
        self._last_result: Optional[CycleResult] = None
        self._subscribers: List[Subscriber] = []
        self.price_history = PriceHistory()

    # ------------------------------------------------------------------
    # State machine

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._status is SessionStatus.ACTIVE

    @property
    def config(self) -> Optional[SessionConfig]:
        return self._config

    @property
    def gates(self) -> Optional[SessionGates]:
        return self._gates

    @property
    def scheduler(self) -> Optional[PollingScheduler]:
        return self._scheduler

    def activate(self, config: Union[SessionConfig, Mapping[str, Any]], start_polling: bool = True) -> None:
        """
        Validate, acknowledge with the oracle and start polling.

        Raises:
            ValidationError: invalid config (session unchanged)
            TransientFetchError: oracle refused or unreachable (session stays Inactive)
        """
        if not isinstance(config, SessionConfig):
            config = SessionConfig.from_dict(config)
        config.validate()
        if not config.account and self.default_account:
            config = SessionConfig(
                token=config.token,
                portfolio_amount=config.portfolio_amount,
                risk_level=config.risk_level,
                collateral_asset=config.collateral_asset,
                account=self.default_account,
            )

        with self._lock:
            if self.is_active:
                logger.info("Session already active, deactivating before reactivation")
                self.deactivate()

            request = config.oracle_request()
            self.oracle.activate(request)

            gates = SessionGates.fresh(self.min_cooldown_ms)
            self._cycle = TradingCycle(
                request=request,
                account=config.account,
                oracle=self.oracle,
                wallet=self.wallet,
                venue=self.venue,
                executor=self.executor,
                markets=self.markets,
                gates=gates,
                sizer=RiskSizer(),
                clock_ms=self.clock_ms,
            )
            self._generation += 1
            self._gates = gates
            self._config = config
            self._cancel = CancellationToken()
            self._status = SessionStatus.ACTIVE
            self.price_history.clear()

            generation, cycle, cancel = self._generation, self._cycle, self._cancel
            self._scheduler = self._scheduler_factory(
                lambda token: self._tick(generation, cycle, token, cancel),
                interval_seconds=self.poll_interval_s,
                name=f"session-{generation}",
                on_drop=self._on_dropped_tick,
            )

        if self.metrics:
            self.metrics.record_session_active(True)
        logger.info(
            f"Session {generation} active: {request.token}/{request.stablecoin} "
            f"risk={config.risk_level.value} leverage={RiskSizer.leverage(config.risk_level)}x "
            f"interval={self.poll_interval_s}s cooldown={self.min_cooldown_ms}ms"
        )
        if start_polling:
            self._scheduler.start()

    def deactivate(self) -> None:
        """Stop polling, notify the oracle and drop all derived state. Never closes positions."""
        with self._lock:
            if not self.is_active:
                return
            scheduler, cancel, config = self._scheduler, self._cancel, self._config
            if cancel is not None:
                cancel.cancel()
            if scheduler is not None:
                scheduler.stop()

            try:
                self.oracle.deactivate(config.oracle_request())
            except TransientFetchError as e:
                logger.warning(f"Oracle deactivate failed (session deactivated locally): {e}")

            if self._gates is not None:
                self._gates.cooldown.reset()
                self._gates.dedup.clear()
            self._gates = None
            self._cycle = None
            self._scheduler = None
            self._cancel = None
            self._config = None
            self._status = SessionStatus.INACTIVE

        if self.metrics:
            self.metrics.record_session_active(False)
        logger.info("Session deactivated")

    def run_cycle(self, timeout: Optional[float] = None) -> CycleResult:
        """
        Run one cycle on the calling thread (used by `once`).

        Shares the scheduler's single-flight lock, so a polled cycle in flight
        finishes before this one starts.
        """
        with self._lock:
            if not self.is_active:
                raise AgentError("session is not active")
            generation, cycle, cancel, scheduler = self._generation, self._cycle, self._cancel, self._scheduler
        try:
            return scheduler.run_inline(lambda: self._tick(generation, cycle, cancel, cancel), timeout=timeout)
        except RuntimeError as e:
            raise AgentError(str(e)) from e

    # ------------------------------------------------------------------
    # Cycle plumbing

    def _tick(self, generation: int, cycle: TradingCycle, token: CancellationToken,
              session_token: CancellationToken) -> CycleResult:
        with self._lock:
            self._cycle_seq += 1
            cycle_id = self._cycle_seq

        started = time.monotonic()
        if session_token.is_set() and not token.is_set():
            token.cancel()
        result = cycle.run(cycle_id, token)
        duration = time.monotonic() - started

        with self._lock:
            if generation != self._generation or not self.is_active:
                logger.info(f"Cycle {cycle_id} finished after its session ended, result discarded")
                return result
            if result.snapshot is not None:
                self._snapshot = result.snapshot
                self.price_history.add(result.started_at_ms, result.snapshot.market_price)
            self._last_result = result
            subscribers = list(self._subscribers)
            cooldown_remaining = self._gates.cooldown.remaining_ms(self.clock_ms()) if self._gates else 0

        self._observe(result, duration, cooldown_remaining)
        for callback in subscribers:
            try:
                callback(result)
            except Exception as e:
                logger.error(f"Cycle subscriber failed: {e}", exc_info=True)
        return result

    def _observe(self, result: CycleResult, duration: float, cooldown_remaining: int) -> None:
        if self.metrics:
            self.metrics.observe_cycle(CycleStats(action=result.action, reason=result.reason, duration_seconds=duration))
            self.metrics.record_cooldown_remaining(cooldown_remaining)
            if result.outcome is not None:
                self.metrics.record_execution(result.outcome.status.value, result.outcome.reason)

        if self.alerts is None or result.outcome is None:
            return
        context = {
            "identity_key": result.record.identity_key if result.record else None,
            "handle": result.record.handle if result.record else None,
            "token": self._config.token if self._config else None,
        }
        if result.outcome.needs_manual_verification:
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "Order confirmation timeout",
                f"Order may be open without confirmation; verify the position on the venue: {result.outcome.error}",
                context,
            )
        elif result.outcome.reason == "rejected":
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Order rejected",
                f"Venue rejected order: {result.outcome.error}",
                context,
            )

    def _on_dropped_tick(self) -> None:
        if self.metrics:
            self.metrics.record_dropped_tick()

    # ------------------------------------------------------------------
    # Queries

    def current_snapshot(self) -> Optional[AnalysisSnapshot]:
        return self._snapshot

    def last_result(self) -> Optional[CycleResult]:
        return self._last_result

    def records(self) -> List[ExecutionRecord]:
        gates = self._gates
        return gates.ledger.records() if gates else []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a per-cycle listener. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def status_payload(self) -> Dict[str, Any]:
        with self._lock:
            config, gates, scheduler = self._config, self._gates, self._scheduler
            snapshot, last = self._snapshot, self._last_result
        payload: Dict[str, Any] = {
            "ok": True,
            "status": self._status.value,
            "snapshot": snapshot.to_dict() if snapshot else None,
            "last_result": last.to_event() if last else None,
            "price_history": self.price_history.points(),
            "markets": self.markets.tokens(),
        }
        if config is not None:
            payload.update({
                "token": config.token,
                "collateral_asset": config.collateral_asset,
                "risk_level": config.risk_level.value,
                "leverage": RiskSizer.leverage(config.risk_level),
            })
        if gates is not None:
            last_execution = gates.ledger.last()
            payload.update({
                "cooldown_remaining_ms": gates.cooldown.remaining_ms(self.clock_ms()),
                "claimed_signals": len(gates.dedup),
                "executions": [r.to_dict() for r in gates.ledger.records()],
                "last_execution": last_execution.to_dict() if last_execution else None,
                "confirmed_executions": len(gates.ledger.confirmed()),
            })
        if scheduler is not None:
            payload["dropped_ticks"] = scheduler.dropped_ticks
        return payload
