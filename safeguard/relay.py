"""
Relay Channel: per-child command mailbox plus a shared confirmation mailbox.

Layout in the store:

    devices/{deviceID}                  heartbeat / registration record
    commands/{deviceID}/{commandID}     pending command
    confirmations/{confirmationID}      completed-command receipt
    status/{deviceID}                   latest human-readable status

Delivery is at-least-once and the channel never deduplicates. Deleting a
command is the consumer's acknowledgment, and because the store's delete is
compare-and-delete it is also the claim that decides which delivery path
gets to execute the command.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .models import Command, Confirmation, Device, StatusRecord, utcnow
from .store import InMemoryStore, StoreError, Subscription

logger = logging.getLogger("relay")

T = TypeVar("T", bound=BaseModel)

CommandHook = Callable[[Command], Awaitable[None]]

WAKE_PAYLOAD_TYPE = "guardian_command"


class RecordStream(Generic[T]):
    """
    Async iterator over records added beneath one store path.

    Each new child is validated into ``model``; malformed children are logged
    and skipped. ``close()`` ends iteration.
    """

    _CLOSED = object()

    def __init__(self, store: InMemoryStore, path: str, model: type[T]) -> None:
        self._model = model
        self._queue: asyncio.Queue = asyncio.Queue()
        self._subscription: Subscription = store.observe_child_added(path, self._on_child)

    def _on_child(self, key: str, value: dict) -> None:
        try:
            record = self._model.model_validate(value)
        except ValidationError as exc:
            logger.warning(f"RELAY | malformed {self._model.__name__} key={key}: {exc.error_count()} errors")
            return
        self._queue.put_nowait(record)

    def close(self) -> None:
        if self._subscription.active:
            self._subscription.cancel()
            self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item


class RelayChannel:
    def __init__(self, store: Optional[InMemoryStore] = None) -> None:
        self.store = store or InMemoryStore()
        self._command_hooks: list[CommandHook] = []

    # ── Commands ───────────────────────────────────────────────────────

    async def send(self, device_id: str, text: str, command_id: Optional[str] = None) -> str:
        """Write a command into the device's mailbox and return its id."""
        command = Command(
            id=command_id or str(uuid.uuid4()),
            device_id=device_id,
            text=text,
            created_at=utcnow(),
        )
        await self.store.set(f"commands/{device_id}/{command.id}", command.to_record())
        logger.info(f"COMMAND | device={device_id} id={command.id} text='{text}'")

        for hook in list(self._command_hooks):
            try:
                await hook(command)
            except Exception:
                logger.exception(f"COMMAND | write hook failed id={command.id}")
        return command.id

    def subscribe_commands(self, device_id: str) -> RecordStream[Command]:
        return RecordStream(self.store, f"commands/{device_id}", Command)

    async def delete_command(self, device_id: str, command_id: str) -> bool:
        """Claim a command by deleting it. Only one caller ever sees True."""
        claimed = await self.store.delete(f"commands/{device_id}/{command_id}")
        logger.info(f"COMMAND_CLAIM | device={device_id} id={command_id} claimed={claimed}")
        return claimed

    async def pending_commands(self, device_id: str) -> list[Command]:
        records = await self.store.children(f"commands/{device_id}")
        commands = []
        for key, value in records.items():
            try:
                commands.append(Command.model_validate(value))
            except ValidationError:
                logger.warning(f"COMMAND | malformed record device={device_id} key={key}")
        return sorted(commands, key=lambda c: c.created_at)

    def on_command_written(self, hook: CommandHook) -> None:
        """Register a coroutine run after every command write (e.g. a push wake-up)."""
        self._command_hooks.append(hook)

    # ── Confirmations ──────────────────────────────────────────────────

    async def send_confirmation(self, command_id: str, device_id: str, action: str) -> str:
        confirmation = Confirmation(
            id=str(uuid.uuid4()),
            command_id=command_id,
            device_id=device_id,
            action=action,
        )
        await self.store.set(f"confirmations/{confirmation.id}", confirmation.to_record())
        logger.info(
            f"CONFIRMATION | device={device_id} command={command_id} "
            f"id={confirmation.id} action={action}"
        )
        return confirmation.id

    def subscribe_confirmations(self) -> RecordStream[Confirmation]:
        return RecordStream(self.store, "confirmations", Confirmation)

    async def delete_confirmation(self, confirmation_id: str) -> bool:
        return await self.store.delete(f"confirmations/{confirmation_id}")

    # ── Status ─────────────────────────────────────────────────────────

    async def publish_status(self, device_id: str, message: str) -> None:
        record = StatusRecord(device_id=device_id, message=message)
        await self.store.set(f"status/{device_id}", record.to_record())
        logger.info(f"STATUS | device={device_id} message='{message}'")

    async def get_status(self, device_id: str) -> Optional[StatusRecord]:
        value = await self.store.get(f"status/{device_id}")
        return StatusRecord.model_validate(value) if value else None

    # ── Devices ────────────────────────────────────────────────────────

    async def register_device(self, device: Device) -> None:
        await self.store.set(f"devices/{device.id}", device.to_record())
        logger.info(f"DEVICE | registered id={device.id} name='{device.display_name}'")

    async def heartbeat(
        self,
        device_id: str,
        name: str = "",
        push_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Device:
        """Refresh ``lastSeen``, keeping a previously registered push token."""
        existing = await self.store.get(f"devices/{device_id}")
        if push_token is None and existing:
            push_token = existing.get("pushToken")
        device = Device(
            id=device_id,
            display_name=name or (existing or {}).get("name", ""),
            last_seen=now or utcnow(),
            push_token=push_token,
        )
        await self.store.set(f"devices/{device_id}", device.to_record())
        logger.debug(f"HEARTBEAT | device={device_id}")
        return device

    async def get_device(self, device_id: str) -> Optional[Device]:
        value = await self.store.get(f"devices/{device_id}")
        return Device.model_validate(value) if value else None

    async def list_devices(self) -> list[Device]:
        """Registered child devices. Records that fail validation are skipped."""
        devices = []
        for key, value in (await self.store.children("devices")).items():
            try:
                device = Device.model_validate(value)
            except ValidationError:
                logger.warning(f"DEVICE | malformed record key={key}")
                continue
            if device.type == "child":
                devices.append(device)
        return devices


# ── Push wake-up ───────────────────────────────────────────────────────

def build_wake_payload(command: Command) -> dict:
    """Data fields carried by a push notification that wakes the child."""
    return {
        "command": command.text,
        "commandID": command.id,
        "timestamp": str(int(command.created_at.timestamp() * 1000)),
        "type": WAKE_PAYLOAD_TYPE,
    }


class PushTransport(Protocol):
    async def send(self, token: str, payload: dict) -> None: ...


class WakeNotifier:
    """
    Sends a high-priority push to the target device whenever a command is
    written, giving a backgrounded child a second delivery path.
    """

    def __init__(self, relay: RelayChannel, transport: PushTransport) -> None:
        self._relay = relay
        self._transport = transport
        relay.on_command_written(self.notify)

    async def notify(self, command: Command) -> bool:
        try:
            device = await self._relay.get_device(command.device_id)
        except StoreError:
            logger.exception(f"WAKE | device lookup failed device={command.device_id}")
            return False

        if device is None or not device.push_token:
            logger.warning(f"WAKE | no push token for device={command.device_id}")
            return False

        try:
            await self._transport.send(device.push_token, build_wake_payload(command))
        except Exception:
            logger.exception(f"WAKE | push failed device={command.device_id} command={command.id}")
            return False

        logger.info(f"WAKE | push sent device={command.device_id} command={command.id}")
        return True
