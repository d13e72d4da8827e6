"""
Tests for PollingScheduler: immediate first tick, single-flight, stop semantics.
"""
import threading
import time

import pytest

from runner.scheduler import CancellationToken, PollingScheduler


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestPollingScheduler:

    def test_runs_immediately_on_start(self):
        ran = threading.Event()
        scheduler = PollingScheduler(lambda token: ran.set(), interval_seconds=60)
        scheduler.start()
        try:
            assert ran.wait(2.0)
        finally:
            scheduler.stop()

    def test_repeats_on_interval(self):
        calls = []
        scheduler = PollingScheduler(lambda token: calls.append(1), interval_seconds=0.05)
        scheduler.start()
        try:
            assert _wait_for(lambda: len(calls) >= 3)
        finally:
            scheduler.stop()

    def test_overlapping_tick_is_dropped(self):
        release = threading.Event()
        started = threading.Event()
        calls = []

        def slow_cycle(token):
            calls.append(1)
            started.set()
            release.wait(2.0)

        dropped = []
        scheduler = PollingScheduler(slow_cycle, interval_seconds=60, on_drop=lambda: dropped.append(1))
        scheduler.start()
        try:
            assert started.wait(2.0)
            assert scheduler.in_flight
            assert scheduler.trigger() is False
            assert scheduler.trigger() is False
            assert scheduler.dropped_ticks == 2
            assert len(dropped) == 2
        finally:
            release.set()
            scheduler.stop()
        assert scheduler.wait_idle(2.0)
        assert len(calls) == 1

    def test_trigger_runs_when_idle(self):
        calls = []
        scheduler = PollingScheduler(lambda token: calls.append(1), interval_seconds=60)
        scheduler.start()
        try:
            assert _wait_for(lambda: len(calls) == 1)
            assert scheduler.wait_idle(2.0)
            assert scheduler.trigger() is True
            assert _wait_for(lambda: len(calls) == 2)
        finally:
            scheduler.stop()

    def test_run_inline_returns_result_when_idle(self):
        scheduler = PollingScheduler(lambda token: None, interval_seconds=60)
        assert scheduler.run_inline(lambda: 42) == 42
        assert not scheduler.in_flight
        assert scheduler.cycles_started == 1

    def test_run_inline_waits_for_polled_cycle(self):
        release = threading.Event()
        started = threading.Event()
        order = []

        def slow_cycle(token):
            started.set()
            release.wait(2.0)
            order.append("polled")

        scheduler = PollingScheduler(slow_cycle, interval_seconds=60)
        scheduler.start()
        try:
            assert started.wait(2.0)
            inline = threading.Thread(target=lambda: scheduler.run_inline(lambda: order.append("inline")))
            inline.start()
            inline.join(0.2)
            assert inline.is_alive()
            release.set()
            inline.join(2.0)
            assert order == ["polled", "inline"]
        finally:
            release.set()
            scheduler.stop()

    def test_run_inline_timeout(self):
        release = threading.Event()
        started = threading.Event()

        def slow_cycle(token):
            started.set()
            release.wait(2.0)

        scheduler = PollingScheduler(slow_cycle, interval_seconds=60)
        scheduler.start()
        try:
            assert started.wait(2.0)
            with pytest.raises(RuntimeError):
                scheduler.run_inline(lambda: None, timeout=0.05)
        finally:
            release.set()
            scheduler.stop()

    def test_tick_during_inline_run_is_dropped(self):
        calls = []
        scheduler = PollingScheduler(lambda token: calls.append(1), interval_seconds=60)
        scheduler.start()
        try:
            assert _wait_for(lambda: len(calls) == 1)
            assert scheduler.wait_idle(2.0)
            assert scheduler.run_inline(scheduler.trigger) is False
            assert scheduler.dropped_ticks == 1
            assert len(calls) == 1
        finally:
            scheduler.stop()

    def test_exception_does_not_stop_ticks(self):
        calls = []

        def flaky(token):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        scheduler = PollingScheduler(flaky, interval_seconds=0.05)
        scheduler.start()
        try:
            assert _wait_for(lambda: len(calls) >= 2)
        finally:
            scheduler.stop()

    def test_stop_cancels_running_cycle_and_prevents_new_ones(self):
        seen_tokens = []
        started = threading.Event()
        finished = threading.Event()

        def cycle(token: CancellationToken):
            seen_tokens.append(token)
            started.set()
            token.wait(2.0)
            finished.set()

        scheduler = PollingScheduler(cycle, interval_seconds=0.05)
        scheduler.start()
        assert started.wait(2.0)
        scheduler.stop()
        assert finished.wait(2.0)
        assert seen_tokens[0].cancelled
        assert not scheduler.is_running
        assert scheduler.trigger() is False
        time.sleep(0.15)
        assert len(seen_tokens) == 1

    def test_restart_gets_fresh_token(self):
        tokens = []
        scheduler = PollingScheduler(lambda token: tokens.append(token), interval_seconds=60)
        scheduler.start()
        assert _wait_for(lambda: len(tokens) == 1)
        scheduler.stop()
        assert scheduler.wait_idle(2.0)
        scheduler.start()
        try:
            assert _wait_for(lambda: len(tokens) == 2)
            assert tokens[0].cancelled
            assert not tokens[1].cancelled
        finally:
            scheduler.stop()

    def test_double_start_rejected(self):
        scheduler = PollingScheduler(lambda token: None, interval_seconds=60)
        scheduler.start()
        try:
            with pytest.raises(RuntimeError):
                scheduler.start()
        finally:
            scheduler.stop()

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            PollingScheduler(lambda token: None, interval_seconds=0)
