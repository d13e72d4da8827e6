"""Prometheus-backed metrics hooks for the polling loop and order execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "perp_agent_"


@dataclass
class CycleStats:
    action: str
    reason: str
    duration_seconds: float


class MetricsRecorder:
    """
    Expose control loop stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Optional[CycleStats] = None
        self._skip_counts: Dict[str, int] = {}
        self._outcome_counts: Dict[str, int] = {}
        self._dropped_ticks = 0

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._skip_counter = None
            self._outcome_counter = None
            self._dropped_counter = None
            self._session_gauge = None
            self._cooldown_gauge = None
            return

        self._cycle_summary = Summary(
            f"{_METRIC_PREFIX}cycle_duration_seconds",
            "Duration of one evaluation cycle",
        )
        self._cycle_counter = Counter(
            f"{_METRIC_PREFIX}cycles_total",
            "Evaluation cycles by action",
            labelnames=("action",),
        )
        self._skip_counter = Counter(
            f"{_METRIC_PREFIX}skips_total",
            "Skipped cycles by reason",
            labelnames=("reason",),
        )
        self._outcome_counter = Counter(
            f"{_METRIC_PREFIX}executions_total",
            "Order executions by outcome and reason",
            labelnames=("outcome", "reason"),
        )
        self._dropped_counter = Counter(
            f"{_METRIC_PREFIX}dropped_ticks_total",
            "Scheduler ticks dropped because a cycle was still running",
        )
        self._session_gauge = Gauge(
            f"{_METRIC_PREFIX}session_active",
            "1 while a trading session is active",
        )
        self._cooldown_gauge = Gauge(
            f"{_METRIC_PREFIX}cooldown_remaining_seconds",
            "Seconds until the cooldown gate permits the next execution",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)

            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        if self._enabled:
            self._cycle_summary.observe(stats.duration_seconds)
            self._cycle_counter.labels(action=stats.action).inc()
            if stats.action == "skipped":
                self._skip_counter.labels(reason=stats.reason or "unknown").inc()

        if stats.action == "skipped":
            key = stats.reason or "unknown"
            self._skip_counts[key] = self._skip_counts.get(key, 0) + 1
        self._last_cycle_stats = stats

    def record_execution(self, outcome: str, reason: str) -> None:
        key = f"{outcome}:{reason}"
        self._outcome_counts[key] = self._outcome_counts.get(key, 0) + 1
        if self._enabled:
            self._outcome_counter.labels(outcome=outcome, reason=reason or "none").inc()

    def record_dropped_tick(self) -> None:
        self._dropped_ticks += 1
        if self._enabled:
            self._dropped_counter.inc()

    def record_session_active(self, active: bool) -> None:
        if self._enabled:
            self._session_gauge.set(1 if active else 0)

    def record_cooldown_remaining(self, remaining_ms: int) -> None:
        if self._enabled:
            self._cooldown_gauge.set(max(remaining_ms, 0) / 1000.0)

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def skip_snapshot(self) -> Dict[str, int]:
        return dict(self._skip_counts)

    def outcome_snapshot(self) -> Dict[str, int]:
        return dict(self._outcome_counts)

    @property
    def dropped_ticks(self) -> int:
        return self._dropped_ticks
