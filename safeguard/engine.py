"""
Restriction Engine: the child device's restriction state machine.

    none ──shutdown/block──────────▶ emergencyShutdown ─┐
     │  ──shutdown/block apps:…───▶ appSpecific ───────┤
     │  ──educational─────────────▶ educational ───────┼──allow / expiry──▶ none
     │  ──bedtime─────────────────▶ bedtime ───────────┘
     └──extend minutes:N──▶ none, re-block armed for now+N

``warning`` never changes the policy; it shows (or refreshes) an advisory.

Every mutation goes through ``apply`` or ``expire`` under one lock, so the
state is only ever touched by one coroutine at a time. Enforcer failures are
logged and the state still records the intended policy, so a later
``allow`` always converges.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .config import DEFAULT_TIMINGS, Timings
from .enforcer import AdvisoryDisplay, Enforcer, LoggingAdvisoryDisplay
from .models import (
    CATEGORY_APPS,
    POLICY_TEMPLATES,
    STATUS_APPS_BLOCKED,
    STATUS_EXPIRED,
    STATUS_EXTENDED,
    STATUS_EXTENSION_ENDED,
    STATUS_MODE,
    STATUS_REMOVED,
    STATUS_SHUTDOWN,
    STATUS_WARNING,
    Action,
    ActivePolicy,
    Advisory,
    ParsedCommand,
    RestrictionState,
    RestrictionType,
    utcnow,
)

logger = logging.getLogger("engine")

StatusSink = Callable[[str], Awaitable[None]]

STATUS_HISTORY = 50


class RestrictionEngine:
    def __init__(
        self,
        device_id: str,
        enforcer: Enforcer,
        advisory: Optional[AdvisoryDisplay] = None,
        status_sink: Optional[StatusSink] = None,
        timings: Timings = DEFAULT_TIMINGS,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.device_id = device_id
        self.state = RestrictionState()
        self.advisory: Optional[Advisory] = None
        self.statuses: deque[str] = deque(maxlen=STATUS_HISTORY)

        self._enforcer = enforcer
        self._display = advisory or LoggingAdvisoryDisplay()
        self._status_sink = status_sink
        self._timings = timings
        self._now = now
        self._lock = asyncio.Lock()

        self._expiry_task: Optional[asyncio.Task] = None
        self._rearm_task: Optional[asyncio.Task] = None
        self._advisory_task: Optional[asyncio.Task] = None
        self.rearm_at: Optional[datetime] = None

    # ── Public API ─────────────────────────────────────────────────────

    @property
    def has_pending_expiry(self) -> bool:
        return self._expiry_task is not None and not self._expiry_task.done()

    @property
    def has_pending_rearm(self) -> bool:
        return self._rearm_task is not None and not self._rearm_task.done()

    async def apply(self, command: ParsedCommand) -> bool:
        """Execute a parsed command. Returns False for actions the engine cannot run."""
        async with self._lock:
            return await self._dispatch(command)

    async def expire(self) -> bool:
        """Expiry timer callback. A no-op when nothing is restricted."""
        async with self._lock:
            if not self.state.restricted:
                logger.info(f"ENGINE | device={self.device_id} expiry fired with no active policy")
                return False
            logger.info(
                f"ENGINE | device={self.device_id} {self.state.active_policy.value} auto-expired"
            )
            await self._clear(STATUS_EXPIRED)
            return True

    async def close(self) -> None:
        """Cancel every timer without touching enforcement (process shutdown)."""
        for task in self._cancel_timers(include_advisory=True):
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ── Transitions ────────────────────────────────────────────────────

    async def _dispatch(self, command: ParsedCommand) -> bool:
        action = command.action
        logger.info(
            f"ENGINE | device={self.device_id} action={action.value} "
            f"apps={command.apps} duration={command.duration_minutes} "
            f"from={self.state.active_policy.value}"
        )

        if action == Action.ALLOW:
            await self._clear(STATUS_REMOVED)
        elif action in (Action.SHUTDOWN, Action.BLOCK, Action.BLOCK_APP):
            if command.apps:
                await self._block_apps(command.apps, command.duration_minutes)
            else:
                await self._emergency_shutdown(STATUS_SHUTDOWN)
        elif action == Action.WARNING:
            await self._warn(
                command.duration_minutes or self._timings.default_warning_minutes,
                command.message,
            )
        elif action == Action.EXTEND:
            await self._extend(command.duration_minutes or self._timings.default_extend_minutes)
        elif action == Action.EDUCATIONAL:
            await self._mode(ActivePolicy.EDUCATIONAL, command.duration_minutes)
        elif action == Action.BEDTIME:
            await self._mode(ActivePolicy.BEDTIME, command.duration_minutes)
        elif action == Action.SCHEDULE_RESTRICTION:
            await self._scheduled(command)
        else:
            logger.error(f"ENGINE | device={self.device_id} unknown action {action!r}")
            return False
        return True

    async def _clear(self, status: str) -> None:
        self._cancel_timers(include_advisory=True)
        if self.advisory is not None:
            self.advisory = None
            self._call_display(self._display.hide)
        self._enforce(ActivePolicy.NONE)
        self.state = RestrictionState()
        await self._emit(status)

    async def _emergency_shutdown(self, status: str) -> None:
        # Fixed safety net regardless of any requested duration.
        minutes = self._timings.shutdown_safety_minutes
        expires_at = self._deadline(minutes)
        self._cancel_timers()
        self._enforce(ActivePolicy.EMERGENCY_SHUTDOWN)
        self.state = RestrictionState(active_policy=ActivePolicy.EMERGENCY_SHUTDOWN)
        self._arm_expiry(expires_at, minutes)
        await self._emit(status)

    async def _block_apps(self, apps: list[str], duration: Optional[int]) -> None:
        expires_at = self._deadline(duration) if duration else None
        self._cancel_timers()
        # Enforcement is blanket; per-app targeting needs enforcer support.
        self._enforce(ActivePolicy.APP_SPECIFIC)
        self.state = RestrictionState(active_policy=ActivePolicy.APP_SPECIFIC, affected_apps=set(apps))
        if expires_at is not None:
            self._arm_expiry(expires_at, duration)
        duration_text = f"{duration} minutes" if duration else "indefinitely"
        await self._emit(STATUS_APPS_BLOCKED.format(duration=duration_text, apps=", ".join(apps)))

    async def _mode(self, policy: ActivePolicy, duration: Optional[int]) -> None:
        expires_at = self._deadline(duration) if duration else None
        self._cancel_timers()
        self._enforce(policy)
        self.state = RestrictionState(active_policy=policy)
        if expires_at is not None:
            self._arm_expiry(expires_at, duration)
        await self._emit(STATUS_MODE.format(mode=policy.value.capitalize()))

    async def _scheduled(self, command: ParsedCommand) -> None:
        kind = command.restriction_type
        if kind == RestrictionType.BEDTIME:
            await self._mode(ActivePolicy.BEDTIME, command.duration_minutes)
        elif kind == RestrictionType.EDUCATIONAL:
            await self._mode(ActivePolicy.EDUCATIONAL, command.duration_minutes)
        elif kind in CATEGORY_APPS:
            await self._block_apps(command.apps or [CATEGORY_APPS[kind]], command.duration_minutes)
        else:
            await self._emergency_shutdown(STATUS_SHUTDOWN)

    async def _extend(self, minutes: int) -> None:
        rearm_at = self._deadline(minutes)
        self._cancel_timers()
        self._enforce(ActivePolicy.NONE)
        self.state = RestrictionState()
        self.rearm_at = rearm_at
        self._rearm_task = asyncio.create_task(self._rearm_after(minutes * self._timings.minute_seconds))
        await self._emit(STATUS_EXTENDED.format(minutes=minutes))

    async def _warn(self, minutes: int, message: Optional[str]) -> None:
        ends_at = self._deadline(minutes)
        if self.advisory is not None:
            self._call_display(self._display.update, minutes, message)
        else:
            self._call_display(self._display.show, minutes, message)
        self.advisory = Advisory(minutes=minutes, message=message, ends_at=ends_at)

        if self._advisory_task is not None:
            self._advisory_task.cancel()
        self._advisory_task = asyncio.create_task(self._hide_advisory_after(minutes * self._timings.minute_seconds))
        await self._emit(STATUS_WARNING.format(minutes=minutes))

    # ── Timers ─────────────────────────────────────────────────────────

    def _deadline(self, minutes: int) -> datetime:
        return self._now() + timedelta(minutes=minutes)

    def _arm_expiry(self, expires_at: datetime, minutes: int) -> None:
        self.state.expires_at = expires_at
        self._expiry_task = asyncio.create_task(self._expire_after(minutes * self._timings.minute_seconds))
        logger.info(f"ENGINE | device={self.device_id} expiry armed at {self.state.expires_at.isoformat()}")

    async def _expire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.expire()

    async def _rearm_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            self.rearm_at = None
            logger.info(f"ENGINE | device={self.device_id} extension over, re-blocking")
            await self._emergency_shutdown(STATUS_EXTENSION_ENDED)

    async def _hide_advisory_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if self.advisory is not None:
                self.advisory = None
                self._call_display(self._display.hide)

    def _cancel_timers(self, include_advisory: bool = False) -> list[asyncio.Task]:
        """Cancel pending timers other than the one currently running."""
        current = asyncio.current_task()
        names = ["_expiry_task", "_rearm_task"] + (["_advisory_task"] if include_advisory else [])
        cancelled = []
        for name in names:
            task = getattr(self, name)
            setattr(self, name, None)
            if task is not None and task is not current and not task.done():
                task.cancel()
                cancelled.append(task)
        self.rearm_at = None
        return cancelled

    # ── Side effects ───────────────────────────────────────────────────

    def _enforce(self, policy: ActivePolicy) -> None:
        try:
            if policy == ActivePolicy.NONE:
                self._enforcer.clear()
            else:
                self._enforcer.apply(POLICY_TEMPLATES[policy])
        except Exception:
            logger.exception(f"ENGINE | device={self.device_id} enforcer failed for {policy.value}")

    def _call_display(self, method, *args) -> None:
        try:
            method(*args)
        except Exception:
            logger.exception(f"ENGINE | device={self.device_id} advisory display failed")

    async def _emit(self, message: str) -> None:
        self.statuses.append(message)
        if self._status_sink is None:
            return
        try:
            await self._status_sink(message)
        except Exception:
            logger.exception(f"ENGINE | device={self.device_id} status report failed: '{message}'")
