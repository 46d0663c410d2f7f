"""
Shared fakes for the child-side collaborators.
"""

from datetime import datetime, timezone

import pytest

from safeguard.config import Timings
from safeguard.enforcer import AdvisoryDisplay, Enforcer

FIXED_NOW = datetime(2025, 9, 1, 18, 0, tzinfo=timezone.utc)

# One "minute" lasts 10ms so expiry timers fire inside a test.
FAST = Timings(
    minute_seconds=0.01,
    registration_wait_seconds=0.02,
    online_confirm_timeout_seconds=1.0,
    offline_confirm_timeout_seconds=1.0,
    translator_timeout_seconds=0.1,
    heartbeat_interval_seconds=0.01,
)

# Timers effectively never fire.
SLOW = Timings(minute_seconds=3600.0)


class RecordingEnforcer(Enforcer):
    def __init__(self, fail: bool = False):
        self.calls: list[tuple] = []
        self.fail = fail

    def apply(self, restrictions: dict) -> None:
        self.calls.append(("apply", restrictions))
        if self.fail:
            raise RuntimeError("enforcer unavailable")

    def clear(self) -> None:
        self.calls.append(("clear", None))
        if self.fail:
            raise RuntimeError("enforcer unavailable")

    @property
    def applies(self) -> int:
        return sum(1 for name, _ in self.calls if name == "apply")


class RecordingDisplay(AdvisoryDisplay):
    def __init__(self):
        self.calls: list[tuple] = []

    def show(self, minutes, message):
        self.calls.append(("show", minutes, message))

    def update(self, minutes, message):
        self.calls.append(("update", minutes, message))

    def hide(self):
        self.calls.append(("hide",))


@pytest.fixture
def enforcer():
    return RecordingEnforcer()


@pytest.fixture
def display():
    return RecordingDisplay()
