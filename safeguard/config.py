"""
Timing configuration shared by the guardian and child sides.

Every interval the relay depends on lives here so tests and deployments can
shrink or stretch them without touching component code.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields


@dataclass(frozen=True)
class Timings:
    """
    Parameters:
        online_threshold_seconds: heartbeat staleness after which a device reads offline
        heartbeat_interval_seconds: child heartbeat period
        registration_wait_seconds: one-off wait for device data when none is registered
        online_confirm_timeout_seconds: confirmation deadline for an online target
        offline_confirm_timeout_seconds: confirmation deadline for a sleeping target
        shutdown_safety_minutes: fixed auto-expiry of an emergency shutdown
        default_warning_minutes: advisory length when a warning names none
        default_extend_minutes: extension length when an extend names none
        translator_timeout_seconds: deadline for one natural-language translation
        minute_seconds: length of a "minute" for restriction timers
    """

    online_threshold_seconds: float = 300.0
    heartbeat_interval_seconds: float = 30.0
    registration_wait_seconds: float = 2.0
    online_confirm_timeout_seconds: float = 15.0
    offline_confirm_timeout_seconds: float = 30.0
    shutdown_safety_minutes: int = 60
    default_warning_minutes: int = 5
    default_extend_minutes: int = 10
    translator_timeout_seconds: float = 10.0
    minute_seconds: float = 60.0

    @classmethod
    def from_env(cls, prefix: str = "SAFEGUARD_") -> "Timings":
        """Build timings, overriding defaults from ``SAFEGUARD_<FIELD>`` variables."""
        overrides = {}
        for f in fields(cls):
            raw = os.environ.get(prefix + f.name.upper())
            if raw is None:
                continue
            caster = int if f.type in (int, "int") else float
            try:
                overrides[f.name] = caster(raw)
            except ValueError as exc:
                raise ValueError(f"{prefix}{f.name.upper()}={raw!r} is not a valid {caster.__name__}") from exc
        return cls(**overrides)


DEFAULT_TIMINGS = Timings()
