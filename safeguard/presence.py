"""
Presence tracking: online/offline derived from heartbeat staleness.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from .config import DEFAULT_TIMINGS, Timings
from .models import Device, utcnow
from .relay import RelayChannel
from .store import StoreError

logger = logging.getLogger("presence")


def is_online(device: Device, now: Optional[datetime] = None, timings: Timings = DEFAULT_TIMINGS) -> bool:
    now = now or utcnow()
    return (now - device.last_seen).total_seconds() < timings.online_threshold_seconds


def select_target(
    devices: Sequence[Device],
    now: Optional[datetime] = None,
    timings: Timings = DEFAULT_TIMINGS,
) -> Optional[Device]:
    """Most recently seen online device, else the most recently seen one."""
    if not devices:
        return None
    now = now or utcnow()
    ranked = sorted(devices, key=lambda d: d.last_seen, reverse=True)
    for device in ranked:
        if is_online(device, now, timings):
            return device
    return ranked[0]


class HeartbeatPublisher:
    """Refreshes the child's ``lastSeen`` on a fixed period."""

    def __init__(
        self,
        relay: RelayChannel,
        device_id: str,
        name: str = "",
        push_token: Optional[str] = None,
        timings: Timings = DEFAULT_TIMINGS,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._relay = relay
        self.device_id = device_id
        self.name = name
        self.push_token = push_token
        self._timings = timings
        self._now = now
        self._task: Optional[asyncio.Task] = None

    async def beat(self) -> bool:
        try:
            await self._relay.heartbeat(self.device_id, self.name, self.push_token, now=self._now())
        except StoreError:
            logger.exception(f"HEARTBEAT | write failed device={self.device_id}")
            return False
        return True

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        logger.info(f"HEARTBEAT | started device={self.device_id} every {self._timings.heartbeat_interval_seconds}s")
        while True:
            await self.beat()
            await asyncio.sleep(self._timings.heartbeat_interval_seconds)
