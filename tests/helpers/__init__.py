"""Test helpers for the perp agent test suite"""

from tests.helpers.agent_stubs import (
    CycleRig,
    ManualClock,
    StubOracle,
    StubVenue,
    StubWallet,
    fetch_error,
    make_cycle,
    make_executor,
    make_snapshot,
)

__all__ = [
    "CycleRig",
    "ManualClock",
    "StubOracle",
    "StubVenue",
    "StubWallet",
    "fetch_error",
    "make_cycle",
    "make_executor",
    "make_snapshot",
]
