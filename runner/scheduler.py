"""
Fixed-interval single-flight poller.

One timer thread per start(); each tick that finds no cycle in flight runs
the cycle on its own worker thread. A tick that fires while a cycle is still
running is dropped, never queued.
"""

import logging
import threading
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken(threading.Event):
    """Set once, by stop(). Cycles check it after every blocking call."""

    def cancel(self) -> None:
        self.set()

    @property
    def cancelled(self) -> bool:
        return self.is_set()


class PollingScheduler:
    """
    Runs `cycle_fn(token)` immediately on start, then once per interval.

    stop() cancels the recurring trigger and sets the running cycle's token;
    the cycle may finish its current step but no new cycle starts. Exceptions
    escaping `cycle_fn` are logged and never stop future ticks.
    """

    def __init__(self, cycle_fn: Callable[[CancellationToken], None], interval_seconds: float = 5.0,
                 name: str = "poller", on_drop: Optional[Callable[[], None]] = None):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        self._cycle_fn = cycle_fn
        self.interval_seconds = float(interval_seconds)
        self.name = name
        self._on_drop = on_drop

        self._state_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._cond = threading.Condition()
        self._in_flight = False
        self._token: Optional[CancellationToken] = None
        self._timer: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None
        self.dropped_ticks = 0
        self.cycles_started = 0

    @property
    def is_running(self) -> bool:
        token = self._token
        return token is not None and not token.is_set()

    @property
    def in_flight(self) -> bool:
        with self._cond:
            return self._in_flight

    def start(self, interval_seconds: Optional[float] = None) -> None:
        with self._state_lock:
            if self.is_running:
                raise RuntimeError(f"{self.name} already running")
            if interval_seconds is not None:
                if interval_seconds <= 0:
                    raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
                self.interval_seconds = float(interval_seconds)
            token = CancellationToken()
            self._token = token
            self._timer = threading.Thread(
                target=self._timer_loop, args=(token,), name=f"{self.name}-timer", daemon=True,
            )
            self._timer.start()
        logger.info(f"[POLL] {self.name} started (interval={self.interval_seconds}s)")

    def stop(self, join_timeout: Optional[float] = 5.0) -> None:
        with self._state_lock:
            token, timer = self._token, self._timer
            if token is None:
                return
            token.cancel()
            self._timer = None
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout=join_timeout)
        logger.info(f"[POLL] {self.name} stopped (dropped_ticks={self.dropped_ticks})")

    def trigger(self) -> bool:
        """Run a tick now. False if stopped or a cycle is already in flight."""
        token = self._token
        if token is None or token.is_set():
            return False
        return self._dispatch(token)

    def run_inline(self, fn: Callable[[], T], timeout: Optional[float] = None) -> T:
        """
        Run `fn()` on the calling thread under the single-flight lock.

        Waits for an in-flight cycle to finish first; ticks that fire while
        `fn` runs are dropped like any other overlapping tick.

        Raises:
            RuntimeError: a cycle was still in flight after `timeout` seconds
        """
        acquired = self._cycle_lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise RuntimeError(f"{self.name}: cycle still in flight after {timeout}s")
        with self._cond:
            self._in_flight = True
        self.cycles_started += 1
        try:
            return fn()
        finally:
            self._finish()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no cycle is in flight. False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._in_flight, timeout)

    def _timer_loop(self, token: CancellationToken) -> None:
        while not token.is_set():
            self._dispatch(token)
            if token.wait(self.interval_seconds):
                break

    def _dispatch(self, token: CancellationToken) -> bool:
        if not self._cycle_lock.acquire(blocking=False):
            self.dropped_ticks += 1
            logger.debug(f"[POLL] {self.name} tick dropped, previous cycle still running")
            if self._on_drop is not None:
                self._on_drop()
            return False

        if token.is_set():
            self._cycle_lock.release()
            return False

        with self._cond:
            self._in_flight = True
        self.cycles_started += 1
        worker = threading.Thread(
            target=self._run_cycle, args=(token,), name=f"{self.name}-cycle-{self.cycles_started}", daemon=True,
        )
        self._worker = worker
        try:
            worker.start()
        except RuntimeError:
            self._finish()
            raise
        return True

    def _run_cycle(self, token: CancellationToken) -> None:
        try:
            self._cycle_fn(token)
        except Exception as e:
            logger.error(f"[POLL] {self.name} cycle raised: {e}", exc_info=True)
        finally:
            self._finish()

    def _finish(self) -> None:
        with self._cond:
            self._in_flight = False
            self._cycle_lock.release()
            self._cond.notify_all()
