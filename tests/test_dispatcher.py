"""
End-to-end tests: guardian dispatcher → relay → child processor → engine.
"""

import asyncio
import time
from datetime import timedelta

import pytest

from safeguard.child import ChildRuntime
from safeguard.config import Timings
from safeguard.dispatcher import (
    REASON_CHANNEL_ERROR,
    REASON_CONFIRMED,
    REASON_NO_DEVICE,
    REASON_TIMEOUT,
    REASON_UNRECOGNISED,
    GuardianDispatcher,
)
from safeguard.models import Action, ActivePolicy, Device, ParsedCommand, utcnow
from safeguard.relay import RelayChannel
from safeguard.store import InMemoryStore, StoreError

from conftest import FAST, RecordingEnforcer


class BrokenStore(InMemoryStore):
    async def set(self, path, value):
        if path.startswith("commands/"):
            raise StoreError("write rejected")
        await super().set(path, value)


class StaticTranslator:
    def __init__(self, result):
        self.result = result

    async def translate(self, text):
        return self.result


async def _child(relay, device_id="D1", timings=FAST):
    runtime = ChildRuntime(relay, device_id, f"{device_id} tablet", enforcer=RecordingEnforcer(), timings=timings)
    await runtime.start()
    return runtime


# ── Happy path ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_shutdown_confirmed_by_online_child():
    relay = RelayChannel()
    child = await _child(relay)
    dispatcher = GuardianDispatcher(relay, timings=FAST)
    dispatcher.start()

    before = utcnow()
    result = await dispatcher.dispatch("shutdown")

    assert result.success is True
    assert result.reason == REASON_CONFIRMED
    assert result.device_id == "D1"
    state = child.engine.state
    assert state.active_policy == ActivePolicy.EMERGENCY_SHUTDOWN
    assert before + timedelta(minutes=59) < state.expires_at <= utcnow() + timedelta(minutes=60)

    # The listener removes confirmations it has consumed.
    await asyncio.sleep(0.01)
    assert await relay.store.children("confirmations") == {}
    assert dispatcher.in_flight == 0
    assert await dispatcher.restrictions_on("D1") is True

    await dispatcher.stop()
    await child.stop()


@pytest.mark.asyncio
async def test_allow_lifts_app_specific_restrictions():
    relay = RelayChannel()
    child = await _child(relay)
    dispatcher = GuardianDispatcher(relay, timings=FAST)
    dispatcher.start()

    assert await dispatcher.send_command(Action.BLOCK, apps=["games"]) is True
    assert child.engine.state.active_policy == ActivePolicy.APP_SPECIFIC
    assert child.engine.state.affected_apps == {"games"}

    assert await dispatcher.send_command("allow") is True
    assert child.engine.state.active_policy == ActivePolicy.NONE
    assert child.engine.state.affected_apps == set()
    status = await dispatcher.latest_status("D1")
    assert "removed" in status
    assert await dispatcher.restrictions_on("D1") is False

    await dispatcher.stop()
    await child.stop()


@pytest.mark.asyncio
async def test_send_command_carries_parameters():
    relay = RelayChannel()
    child = await _child(relay)
    dispatcher = GuardianDispatcher(relay, timings=FAST)

    ok = await dispatcher.send_command(Action.WARNING, duration_minutes=7, message="Time to stop")
    assert ok is True
    assert child.engine.advisory.minutes == 7
    assert child.engine.advisory.message == "Time to stop"

    await dispatcher.stop()
    await child.stop()


@pytest.mark.asyncio
async def test_natural_language_is_translated_and_sent():
    relay = RelayChannel()
    child = await _child(relay)
    translator = StaticTranslator(ParsedCommand(action="scheduleRestriction", restriction_type="bedtime"))
    dispatcher = GuardianDispatcher(relay, translator=translator, timings=FAST)

    result = await dispatcher.dispatch_natural_language("Lights out for the night")
    assert result.success is True
    assert result.text == "bedtime"
    assert child.engine.state.active_policy == ActivePolicy.BEDTIME

    await dispatcher.stop()
    await child.stop()


@pytest.mark.asyncio
async def test_natural_language_unrecognised():
    dispatcher = GuardianDispatcher(RelayChannel(), timings=FAST)
    result = await dispatcher.dispatch_natural_language("make me a sandwich")
    assert result.success is False
    assert result.reason == REASON_UNRECOGNISED


# ── Target selection ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_online_device_preferred_over_stale_one():
    relay = RelayChannel()
    await relay.register_device(Device(id="old", display_name="Old", last_seen=utcnow() - timedelta(hours=2)))
    child = await _child(relay, "new")
    dispatcher = GuardianDispatcher(relay, timings=FAST)

    result = await dispatcher.dispatch("bedtime")
    assert result.success is True
    assert result.device_id == "new"

    await dispatcher.stop()
    await child.stop()


@pytest.mark.asyncio
async def test_no_device_fails_after_registration_wait():
    dispatcher = GuardianDispatcher(RelayChannel(), timings=FAST)
    started = time.monotonic()
    result = await dispatcher.dispatch("shutdown")
    assert result.success is False
    assert result.reason == REASON_NO_DEVICE
    assert time.monotonic() - started >= FAST.registration_wait_seconds * 0.9


@pytest.mark.asyncio
async def test_device_registering_during_wait_is_used():
    relay = RelayChannel()
    dispatcher = GuardianDispatcher(relay, timings=Timings(registration_wait_seconds=0.05))

    async def late_child():
        await asyncio.sleep(0.01)
        return await _child(relay)

    child_task = asyncio.create_task(late_child())
    result = await dispatcher.dispatch("allow")
    child = await child_task
    assert result.success is True
    assert result.device_id == "D1"

    await dispatcher.stop()
    await child.stop()


# ── Failures ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_timeout_when_child_never_answers():
    relay = RelayChannel()
    await relay.heartbeat("D1", "Sleeping tablet")
    timings = Timings(online_confirm_timeout_seconds=0.05, offline_confirm_timeout_seconds=5.0)
    dispatcher = GuardianDispatcher(relay, timings=timings)

    result = await dispatcher.dispatch("shutdown")
    assert result.success is False
    assert result.reason == REASON_TIMEOUT
    # The command stays in the mailbox for the child to pick up later.
    assert [c.id for c in await relay.pending_commands("D1")] == [result.command_id]
    assert dispatcher.in_flight == 0
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_offline_target_gets_longer_timeout():
    relay = RelayChannel()
    await relay.register_device(Device(id="D1", last_seen=utcnow() - timedelta(minutes=10)))
    timings = Timings(online_confirm_timeout_seconds=0.01, offline_confirm_timeout_seconds=0.15)
    dispatcher = GuardianDispatcher(relay, timings=timings)

    started = time.monotonic()
    result = await dispatcher.dispatch("shutdown")
    assert result.reason == REASON_TIMEOUT
    assert time.monotonic() - started >= 0.14
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_offline_child_that_wakes_in_time_confirms():
    relay = RelayChannel()
    await relay.register_device(Device(id="D1", last_seen=utcnow() - timedelta(minutes=10)))
    dispatcher = GuardianDispatcher(relay, timings=FAST)

    async def wake_later():
        await asyncio.sleep(0.05)
        return await _child(relay)

    waking = asyncio.create_task(wake_later())
    assert await dispatcher.send_text("extend minutes:15") is True
    child = await waking
    assert child.engine.has_pending_rearm

    await dispatcher.stop()
    await child.stop()


@pytest.mark.asyncio
async def test_channel_error_is_a_failure():
    relay = RelayChannel(BrokenStore())
    await relay.heartbeat("D1", "Kid")
    dispatcher = GuardianDispatcher(relay, timings=FAST)
    result = await dispatcher.dispatch("shutdown")
    assert result.success is False
    assert result.reason == REASON_CHANNEL_ERROR
    assert dispatcher.in_flight == 0
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_invalid_structured_command_is_rejected():
    dispatcher = GuardianDispatcher(RelayChannel(), timings=FAST)
    assert await dispatcher.send_command("launch", apps=["rockets"]) is False


@pytest.mark.asyncio
async def test_late_confirmation_is_cleaned_up():
    relay = RelayChannel()
    dispatcher = GuardianDispatcher(relay, timings=FAST)
    dispatcher.start()
    await relay.send_confirmation("unknown-command", "D1", "allow")
    await asyncio.sleep(0.01)
    assert await relay.store.children("confirmations") == {}
    await dispatcher.stop()
