"""
Child device wiring.

Builds one engine and one processor at start-up and hands the same
processor to the relay subscription and to the push handler, so both
delivery paths share the idempotency gate.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import DEFAULT_TIMINGS, Timings
from .engine import RestrictionEngine
from .enforcer import AdvisoryDisplay, Enforcer, LoggingAdvisoryDisplay, LoggingEnforcer
from .presence import HeartbeatPublisher
from .processor import ChildProcessor
from .relay import RelayChannel
from .translator import Translator

logger = logging.getLogger("child")


class ChildRuntime:
    def __init__(
        self,
        relay: RelayChannel,
        device_id: str,
        name: str = "",
        enforcer: Optional[Enforcer] = None,
        advisory: Optional[AdvisoryDisplay] = None,
        translator: Optional[Translator] = None,
        push_token: Optional[str] = None,
        timings: Timings = DEFAULT_TIMINGS,
    ) -> None:
        self.relay = relay
        self.device_id = device_id
        self.engine = RestrictionEngine(
            device_id,
            enforcer or LoggingEnforcer(),
            advisory=advisory or LoggingAdvisoryDisplay(),
            status_sink=self._report_status,
            timings=timings,
        )
        self.processor = ChildProcessor(relay, self.engine, translator=translator, timings=timings)
        self.heartbeat = HeartbeatPublisher(relay, device_id, name, push_token=push_token, timings=timings)

    async def _report_status(self, message: str) -> None:
        await self.relay.publish_status(self.device_id, message)

    async def start(self) -> None:
        """Register, then start heartbeats and the command subscription."""
        await self.heartbeat.beat()
        self.heartbeat.start()
        self.processor.start()
        logger.info(f"CHILD | device={self.device_id} running")

    async def stop(self) -> None:
        await self.processor.stop()
        await self.heartbeat.stop()
        await self.engine.close()
        logger.info(f"CHILD | device={self.device_id} stopped")

    async def on_push(self, payload: dict) -> bool:
        """Entry point for the push-notification handler."""
        return await self.processor.handle_push(payload)
