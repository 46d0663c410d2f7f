"""
Data models for the guardian/child command relay.

Records that travel through the relay store are dumped with
``model_dump(mode="json", by_alias=True)`` so the wire keys match the
camel-case names both devices already use (``deviceID``, ``commandID``...).
"""

from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────

class Action(str, Enum):
    ALLOW = "allow"
    SHUTDOWN = "shutdown"
    BLOCK = "block"
    WARNING = "warning"
    EXTEND = "extend"
    EDUCATIONAL = "educational"
    BEDTIME = "bedtime"
    SCHEDULE_RESTRICTION = "scheduleRestriction"
    BLOCK_APP = "blockApp"


# Actions a human may type as the leading token of a command string.
GRAMMAR_ACTIONS: frozenset[Action] = frozenset({
    Action.ALLOW,
    Action.SHUTDOWN,
    Action.BLOCK,
    Action.WARNING,
    Action.EXTEND,
    Action.EDUCATIONAL,
    Action.BEDTIME,
})


class RestrictionType(str, Enum):
    BEDTIME = "bedtime"
    EDUCATIONAL = "educational"
    SOCIAL_ONLY = "socialOnly"
    GAMES = "games"
    ALL_APPS = "allApps"


class ActivePolicy(str, Enum):
    NONE = "none"
    EMERGENCY_SHUTDOWN = "emergencyShutdown"
    APP_SPECIFIC = "appSpecific"
    EDUCATIONAL = "educational"
    BEDTIME = "bedtime"


class ConfirmationStatus(str, Enum):
    COMPLETED = "completed"


# App categories that a scheduled restriction of this type targets.
CATEGORY_APPS: dict[RestrictionType, str] = {
    RestrictionType.GAMES: "games",
    RestrictionType.SOCIAL_ONLY: "social",
}

# Longest duration a command may carry (one week).
MAX_DURATION_MINUTES = 7 * 24 * 60


def _fold(value: str) -> str:
    return value.replace("_", "").replace("-", "").lower()


_ACTION_SPELLINGS = {_fold(a.value): a for a in Action}
_RESTRICTION_SPELLINGS = {_fold(r.value): r for r in RestrictionType}


def lookup_action(value: str) -> Optional[Action]:
    """Resolve ``block_app``/``blockapp``/``blockApp`` style spellings."""
    return _ACTION_SPELLINGS.get(_fold(value))


def lookup_restriction_type(value: str) -> Optional[RestrictionType]:
    return _RESTRICTION_SPELLINGS.get(_fold(value))


# ── Policy templates per restriction state ─────────────────────────────

BLANKET_RESTRICTIONS: dict = {
    "shield_app_categories": "all",
    "shield_web_categories": "all",
    "deny_app_removal": True,
    "deny_in_app_purchases": True,
    "require_purchase_password": True,
    "maximum_rating": 200,
    "deny_multiplayer_gaming": True,
    "deny_adding_friends": True,
}

CLEAR_RESTRICTIONS: dict = {
    "shield_app_categories": None,
    "shield_web_categories": None,
    "deny_app_removal": False,
    "deny_in_app_purchases": False,
    "require_purchase_password": False,
    "maximum_rating": 1000,
    "deny_multiplayer_gaming": False,
    "deny_adding_friends": False,
}

# The enforcer cannot target individual apps or categories yet, so every
# restricted state falls back to the blanket directive.
POLICY_TEMPLATES: dict[ActivePolicy, dict] = {
    ActivePolicy.NONE: CLEAR_RESTRICTIONS,
    ActivePolicy.EMERGENCY_SHUTDOWN: BLANKET_RESTRICTIONS,
    ActivePolicy.APP_SPECIFIC: BLANKET_RESTRICTIONS,
    ActivePolicy.EDUCATIONAL: BLANKET_RESTRICTIONS,
    ActivePolicy.BEDTIME: BLANKET_RESTRICTIONS,
}


# ── Status vocabulary ──────────────────────────────────────────────────
#
# The guardian classifies status text by substring, so every message the
# engine emits must come from this table.

STATUS_REMOVED = "All restrictions removed - device unlocked"
STATUS_EXPIRED = "Restrictions auto-expired - all restrictions removed"
STATUS_SHUTDOWN = "Emergency shutdown active - all apps blocked"
STATUS_APPS_BLOCKED = "Apps blocked {duration}: {apps}"
STATUS_EXTENDED = "Session extended by {minutes} minutes"
STATUS_EXTENSION_ENDED = "Extended session ended - all apps blocked"
STATUS_MODE = "{mode} mode active - apps blocked"
STATUS_WARNING = "{minutes}-minute countdown shown to child"

RESTRICTED_MARKERS: tuple[str, ...] = ("blocked", "restricted")


def restrictions_active(message: Optional[str]) -> bool:
    """True when a status message describes restrictions being in force."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in RESTRICTED_MARKERS)


# ── Relay records ──────────────────────────────────────────────────────

class Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Device(Record):
    id: str = Field(..., alias="deviceID", min_length=1, max_length=128)
    display_name: str = Field("", alias="name")
    last_seen: datetime = Field(..., alias="lastSeen")
    type: str = "child"
    push_token: Optional[str] = Field(None, alias="pushToken")


class Command(Record):
    id: str = Field(..., alias="commandID")
    device_id: str = Field(..., alias="deviceID")
    text: str = Field(..., alias="command")
    created_at: datetime = Field(default_factory=utcnow, alias="timestamp")


class Confirmation(Record):
    id: str = Field(..., alias="confirmationID")
    command_id: str = Field(..., alias="commandID")
    device_id: str = Field(..., alias="deviceID")
    action: str
    status: ConfirmationStatus = ConfirmationStatus.COMPLETED
    timestamp: datetime = Field(default_factory=utcnow)


class StatusRecord(Record):
    device_id: str = Field(..., alias="deviceID")
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


# ── Parsed commands ────────────────────────────────────────────────────

class ParsedCommand(BaseModel):
    """
    Structured form of a command, produced by the grammar parser, the
    keyword matcher or the natural-language translator.
    """

    model_config = ConfigDict(populate_by_name=True)

    action: Action
    apps: Optional[list[str]] = None
    duration_minutes: Optional[int] = Field(None, alias="durationMinutes", ge=0, le=MAX_DURATION_MINUTES)
    message: Optional[str] = None
    restriction_type: Optional[RestrictionType] = Field(None, alias="restrictionType")

    @field_validator("action", mode="before")
    @classmethod
    def _normalise_action(cls, value):
        if isinstance(value, str):
            return lookup_action(value) or value
        return value

    @field_validator("restriction_type", mode="before")
    @classmethod
    def _normalise_restriction_type(cls, value):
        if isinstance(value, str):
            return lookup_restriction_type(value) or value
        return value

    @field_validator("apps")
    @classmethod
    def _drop_empty_apps(cls, value):
        if value is None:
            return None
        cleaned = [app.strip() for app in value if app and app.strip()]
        return cleaned or None


# ── Child-side state ───────────────────────────────────────────────────

class RestrictionState(BaseModel):
    active_policy: ActivePolicy = ActivePolicy.NONE
    expires_at: Optional[datetime] = None
    affected_apps: set[str] = Field(default_factory=set)

    @property
    def restricted(self) -> bool:
        return self.active_policy != ActivePolicy.NONE


class Advisory(BaseModel):
    minutes: int
    message: Optional[str] = None
    ends_at: datetime


# ── Request / Response schemas ─────────────────────────────────────────

class HeartbeatPayload(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=128)
    name: str = ""
    push_token: Optional[str] = None


class CommandRequest(BaseModel):
    action: Action
    apps: Optional[list[str]] = None
    duration_minutes: Optional[int] = Field(None, ge=0, le=MAX_DURATION_MINUTES)
    message: Optional[str] = None
    restriction_type: Optional[RestrictionType] = None


class TextCommandRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=1000)


class ConfirmationPayload(BaseModel):
    command_id: str = Field(..., min_length=1)
    device_id: str = Field(..., min_length=1)
    action: str


class StatusPayload(BaseModel):
    device_id: str = Field(..., min_length=1)
    message: str


class DeviceView(BaseModel):
    device_id: str
    name: str
    last_seen: datetime
    online: bool
