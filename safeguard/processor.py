"""
Child Processor: executes guardian commands on the supervised device.

Commands reach the child two ways that can race on the same id: the relay
subscription and a push wake signal carrying the same payload. Both paths
go through ``handle``, which owns the single idempotency gate:

1. a local set of ids this process has already taken, then
2. the relay's compare-and-delete claim, which is also the acknowledgment.

Only the caller that wins the claim executes the command and sends the one
confirmation for it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError

from .config import DEFAULT_TIMINGS, Timings
from .engine import RestrictionEngine
from .models import Command, ParsedCommand
from .parser import parse_command
from .relay import RecordStream, RelayChannel
from .store import StoreError
from .translator import Translator, translate_with_fallback

logger = logging.getLogger("processor")

SOURCE_SUBSCRIPTION = "subscription"
SOURCE_PUSH = "push"
SOURCE_POLL = "poll"


class _BoundedIdSet:
    """Insertion-ordered id set that forgets its oldest entries."""

    def __init__(self, capacity: int = 1024) -> None:
        self._ids: OrderedDict[str, None] = OrderedDict()
        self._capacity = capacity

    def __contains__(self, item: str) -> bool:
        return item in self._ids

    def add(self, item: str) -> None:
        self._ids[item] = None
        self._ids.move_to_end(item)
        while len(self._ids) > self._capacity:
            self._ids.popitem(last=False)

    def discard(self, item: str) -> None:
        self._ids.pop(item, None)


class ChildProcessor:
    def __init__(
        self,
        relay: RelayChannel,
        engine: RestrictionEngine,
        translator: Optional[Translator] = None,
        timings: Timings = DEFAULT_TIMINGS,
    ) -> None:
        self.relay = relay
        self.engine = engine
        self.device_id = engine.device_id
        self._translator = translator
        self._timings = timings
        self._taken = _BoundedIdSet()
        self._confirmed = _BoundedIdSet()
        self._stream: Optional[RecordStream[Command]] = None
        self._task: Optional[asyncio.Task] = None

    # ── Delivery paths ─────────────────────────────────────────────────

    async def handle(self, command: Command, source: str = SOURCE_SUBSCRIPTION) -> bool:
        """Run one command. Returns True only for the call that executed it."""
        if command.id in self._taken:
            logger.info(f"PROCESS | duplicate id={command.id} source={source} (already taken locally)")
            return False
        self._taken.add(command.id)

        try:
            claimed = await self.relay.delete_command(self.device_id, command.id)
        except StoreError:
            # Leave the record for the next delivery to retry.
            logger.exception(f"PROCESS | claim failed id={command.id} source={source}")
            self._taken.discard(command.id)
            return False

        if not claimed:
            logger.info(f"PROCESS | duplicate id={command.id} source={source} (claimed elsewhere)")
            return False

        logger.info(f"PROCESS | executing id={command.id} source={source} text='{command.text}'")
        parsed = await self.interpret(command.text)
        if parsed is None:
            logger.warning(f"PROCESS | dropped unrecognised command id={command.id} text='{command.text}'")
            return False

        try:
            applied = await self.engine.apply(parsed)
        except Exception:
            logger.exception(f"PROCESS | engine failed id={command.id} action={parsed.action.value}")
            return False
        if not applied:
            logger.warning(f"PROCESS | engine rejected id={command.id} action={parsed.action.value}")
            return False

        await self._confirm(command, parsed)
        return True

    async def handle_push(self, payload: dict) -> bool:
        """
        Out-of-band wake signal. The fields may sit at the top level or under
        ``data`` depending on the transport.
        """
        if not isinstance(payload, dict):
            logger.warning(f"PUSH | ignoring non-object payload {type(payload).__name__}")
            return False
        fields = payload if "command" in payload else payload.get("data") or {}
        if not isinstance(fields, dict):
            logger.warning(f"PUSH | ignoring non-object data {type(fields).__name__}")
            return False
        text = fields.get("command")
        command_id = fields.get("commandID")
        raw_timestamp = fields.get("timestamp")

        if (
            not isinstance(text, str)
            or not isinstance(command_id, str)
            or not command_id
            or raw_timestamp is None
        ):
            logger.warning(f"PUSH | payload missing command data keys={sorted(payload)}")
            return False
        try:
            created_at = datetime.fromtimestamp(float(raw_timestamp) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            logger.warning(f"PUSH | bad timestamp {raw_timestamp!r} for id={command_id}")
            return False

        try:
            command = Command(id=command_id, device_id=self.device_id, text=text, created_at=created_at)
        except ValidationError as exc:
            logger.warning(f"PUSH | invalid command id={command_id!r}: {exc.error_count()} errors")
            return False
        return await self.handle(command, source=SOURCE_PUSH)

    async def poll_once(self) -> int:
        """Process everything currently waiting in the mailbox."""
        executed = 0
        for command in await self.relay.pending_commands(self.device_id):
            if await self.handle(command, source=SOURCE_POLL):
                executed += 1
        return executed

    # ── Interpretation ─────────────────────────────────────────────────

    async def interpret(self, text: str) -> Optional[ParsedCommand]:
        """Grammar parser, then the translator, then keyword matching."""
        parsed = parse_command(text)
        if parsed is not None:
            return parsed
        logger.info(f"PROCESS | grammar rejected '{text}', trying fallback")
        return await translate_with_fallback(
            self._translator, text, timeout=self._timings.translator_timeout_seconds
        )

    async def _confirm(self, command: Command, parsed: ParsedCommand) -> None:
        if command.id in self._confirmed:
            logger.info(f"PROCESS | confirmation already sent id={command.id}")
            return
        self._confirmed.add(command.id)
        try:
            await self.relay.send_confirmation(command.id, self.device_id, parsed.action.value)
        except StoreError:
            logger.exception(f"PROCESS | confirmation failed id={command.id}")

    # ── Subscription loop ──────────────────────────────────────────────

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stream = self.relay.subscribe_commands(self.device_id)
        self._task = asyncio.create_task(self._run(self._stream))
        logger.info(f"PROCESS | listening for commands device={self.device_id}")

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

    async def _run(self, stream: RecordStream[Command]) -> None:
        async for command in stream:
            try:
                await self.handle(command, source=SOURCE_SUBSCRIPTION)
            except Exception:
                logger.exception(f"PROCESS | unexpected failure id={command.id}")
