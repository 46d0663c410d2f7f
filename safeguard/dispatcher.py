"""
Guardian Dispatcher: sends a command to a child and waits for its receipt.

The confirmation listener resolves one ``asyncio.Event`` per in-flight
command; ``dispatch`` waits on it with a presence-aware deadline. There is
no queuing and no automatic retry: a failed dispatch is reported to the
caller, who decides whether to try again.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from pydantic import ValidationError

from .config import DEFAULT_TIMINGS, Timings
from .models import Action, ParsedCommand, restrictions_active, utcnow
from .parser import format_command, parse_command
from .presence import is_online, select_target
from .relay import RecordStream, RelayChannel
from .store import StoreError
from .translator import Translator, translate_with_fallback

logger = logging.getLogger("dispatcher")

REASON_CONFIRMED = "confirmed"
REASON_NO_DEVICE = "no_device"
REASON_TIMEOUT = "timeout"
REASON_CHANNEL_ERROR = "channel_error"
REASON_UNRECOGNISED = "unrecognised"


@dataclass
class DispatchResult:
    success: bool
    reason: str
    command_id: Optional[str] = None
    device_id: Optional[str] = None
    text: str = ""


class GuardianDispatcher:
    def __init__(
        self,
        relay: RelayChannel,
        translator: Optional[Translator] = None,
        timings: Timings = DEFAULT_TIMINGS,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.relay = relay
        self.timings = timings
        self._translator = translator
        self._now = now
        self._pending: dict[str, asyncio.Event] = {}
        self._stream: Optional[RecordStream] = None
        self._task: Optional[asyncio.Task] = None

    # ── Lifecycle ──────────────────────────────────────────────────────

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stream = self.relay.subscribe_confirmations()
        self._task = asyncio.create_task(self._listen(self._stream))
        logger.info("DISPATCH | confirmation listener started")

    async def stop(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _listen(self, stream: RecordStream) -> None:
        async for confirmation in stream:
            event = self._pending.get(confirmation.command_id)
            if event is not None:
                event.set()
                logger.info(
                    f"DISPATCH | confirmed command={confirmation.command_id} "
                    f"device={confirmation.device_id} action={confirmation.action}"
                )
            else:
                logger.info(f"DISPATCH | late or foreign confirmation command={confirmation.command_id}")
            try:
                await self.relay.delete_confirmation(confirmation.id)
            except StoreError:
                logger.exception(f"DISPATCH | could not delete confirmation id={confirmation.id}")

    # ── Sending ────────────────────────────────────────────────────────

    async def send_command(self, action: Union[Action, str], **params) -> bool:
        """Build a command from an action and its parameters, send it, wait for the receipt."""
        try:
            command = ParsedCommand(action=action, **params)
        except ValidationError as exc:
            logger.error(f"DISPATCH | invalid command {action!r} {params}: {exc.error_count()} errors")
            return False
        return (await self.dispatch(format_command(command))).success

    async def send_text(self, text: str) -> bool:
        return (await self.dispatch(text)).success

    async def send_natural_language(self, text: str) -> bool:
        return (await self.dispatch_natural_language(text)).success

    async def dispatch_natural_language(self, text: str) -> DispatchResult:
        """
        Text that already follows the grammar is sent untouched; anything else
        is translated (with keyword fallback) and re-rendered as grammar.
        """
        if parse_command(text) is not None:
            return await self.dispatch(text)
        command = await translate_with_fallback(
            self._translator, text, timeout=self.timings.translator_timeout_seconds
        )
        if command is None:
            logger.warning(f"DISPATCH | could not interpret '{text}'")
            return DispatchResult(success=False, reason=REASON_UNRECOGNISED, text=text)
        return await self.dispatch(format_command(command))

    async def dispatch(self, text: str) -> DispatchResult:
        try:
            devices = await self.relay.list_devices()
            if not devices:
                logger.info("DISPATCH | no devices yet, waiting for registration data")
                await asyncio.sleep(self.timings.registration_wait_seconds)
                devices = await self.relay.list_devices()
        except StoreError:
            logger.exception("DISPATCH | device lookup failed")
            return DispatchResult(success=False, reason=REASON_CHANNEL_ERROR, text=text)

        now = self._now()
        target = select_target(devices, now, self.timings)
        if target is None:
            logger.error("DISPATCH | no child devices registered")
            return DispatchResult(success=False, reason=REASON_NO_DEVICE, text=text)

        online = is_online(target, now, self.timings)
        timeout = (
            self.timings.online_confirm_timeout_seconds
            if online
            else self.timings.offline_confirm_timeout_seconds
        )
        if not online:
            logger.warning(f"DISPATCH | no online devices, using most recent device={target.id}")

        return await self._send_and_wait(target.id, text, timeout)

    async def _send_and_wait(self, device_id: str, text: str, timeout: float) -> DispatchResult:
        if self._task is None or self._task.done():
            self.start()

        event = asyncio.Event()
        command_id = str(uuid.uuid4())
        # Registered before the write so an instant confirmation is not missed.
        self._pending[command_id] = event
        try:
            try:
                await self.relay.send(device_id, text, command_id=command_id)
            except StoreError:
                logger.exception(f"DISPATCH | write failed device={device_id} text='{text}'")
                return DispatchResult(success=False, reason=REASON_CHANNEL_ERROR, device_id=device_id, text=text)

            try:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"DISPATCH | timeout after {timeout}s command={command_id} device={device_id}")
                return DispatchResult(
                    success=False, reason=REASON_TIMEOUT, command_id=command_id, device_id=device_id, text=text
                )
        finally:
            self._pending.pop(command_id, None)

        logger.info(f"DISPATCH | command={command_id} confirmed by device={device_id}")
        return DispatchResult(
            success=True, reason=REASON_CONFIRMED, command_id=command_id, device_id=device_id, text=text
        )

    # ── Status ─────────────────────────────────────────────────────────

    async def latest_status(self, device_id: str) -> Optional[str]:
        record = await self.relay.get_status(device_id)
        return record.message if record else None

    async def restrictions_on(self, device_id: str) -> bool:
        return restrictions_active(await self.latest_status(device_id))

    @property
    def in_flight(self) -> int:
        return len(self._pending)
