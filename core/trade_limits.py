"""
Perp Agent Core: Trade Pacing and Dedup

Session-scoped guards consulted by every evaluation cycle:
- CooldownGate: minimum spacing between two confirmed executions
- DedupRegistry: identity keys already submitted this session

Both are owned by one session and written only by that session's cycle.
Deactivation drops them; reactivation builds fresh ones.
"""

import logging
import threading
from typing import Iterable, List, Optional, Set

from core.models import ExecutionRecord, OutcomeStatus

logger = logging.getLogger(__name__)

DEFAULT_MIN_COOLDOWN_MS = 120_000


class CooldownGate:
    """
    Permits a new execution only when MIN_COOLDOWN has passed since the last
    confirmed one. Failed outcomes never advance it, so the next eligible tick
    may retry.
    """

    def __init__(self, min_cooldown_ms: int = DEFAULT_MIN_COOLDOWN_MS):
        if min_cooldown_ms < 0:
            raise ValueError(f"min_cooldown_ms must be >= 0, got {min_cooldown_ms}")
        self.min_cooldown_ms = int(min_cooldown_ms)
        self._last_confirmed_ms: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def last_confirmed_ms(self) -> Optional[int]:
        return self._last_confirmed_ms

    def permit(self, now_ms: int) -> bool:
        with self._lock:
            if self._last_confirmed_ms is None:
                return True
            return now_ms - self._last_confirmed_ms >= self.min_cooldown_ms

    def remaining_ms(self, now_ms: int) -> int:
        """Milliseconds until the gate opens (0 when open)."""
        with self._lock:
            if self._last_confirmed_ms is None:
                return 0
            return max(0, self.min_cooldown_ms - (now_ms - self._last_confirmed_ms))

    def record(self, record: ExecutionRecord) -> None:
        """Advance the window from a confirmed record; ignore failures."""
        if record.outcome is not OutcomeStatus.CONFIRMED:
            return
        with self._lock:
            if self._last_confirmed_ms is None or record.executed_at_ms > self._last_confirmed_ms:
                self._last_confirmed_ms = record.executed_at_ms
        logger.info(
            f"[COOLDOWN] Next trade can be executed after "
            f"t={record.executed_at_ms + self.min_cooldown_ms}ms"
        )

    def reset(self) -> None:
        with self._lock:
            self._last_confirmed_ms = None


class DedupRegistry:
    """
    Identity keys already submitted this session, successfully or not.

    A key is claimed right before submission, so a slow confirmation can
    never let the same signal through twice.
    """

    def __init__(self, claimed: Optional[Iterable[str]] = None):
        self._claimed: Set[str] = set(claimed or ())
        self._lock = threading.Lock()

    def try_claim(self, identity_key: str) -> bool:
        """Atomically claim `identity_key`. False if it was already claimed."""
        with self._lock:
            if identity_key in self._claimed:
                return False
            self._claimed.add(identity_key)
            return True

    def is_claimed(self, identity_key: str) -> bool:
        with self._lock:
            return identity_key in self._claimed

    def clear(self) -> None:
        with self._lock:
            self._claimed.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._claimed)


class ExecutionLedger:
    """
    Append-only execution records for one session.

    `append` updates the cooldown gate under the same lock so a confirmed
    record and the cooldown it implies are never observed apart.
    """

    def __init__(self, cooldown: CooldownGate):
        self._cooldown = cooldown
        self._records: List[ExecutionRecord] = []
        self._lock = threading.Lock()

    def append(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._records.append(record)
            self._cooldown.record(record)

    def records(self) -> List[ExecutionRecord]:
        with self._lock:
            return list(self._records)

    def last(self) -> Optional[ExecutionRecord]:
        with self._lock:
            return self._records[-1] if self._records else None

    def confirmed(self) -> List[ExecutionRecord]:
        with self._lock:
            return [r for r in self._records if r.outcome is OutcomeStatus.CONFIRMED]
