"""
Command grammar parser.

Wire grammar (whitespace separated):

    <action>[ key:value]*

    action            allow | shutdown | block | warning | extend | educational | bedtime
    apps              comma-separated app identifiers
    duration|minutes  integer
    msg               free text, runs to the end of the command
    type              restriction type

Example: ``shutdown apps:games,youtube duration:30 msg:Dinner time``.

``msg:`` must come last: every token after it, including ones that look like
``key:value`` pairs, becomes part of the message. ``warning msg:Stop now
minutes:7`` is a warning with the default length and the message
"Stop now minutes:7". ``format_command`` always renders ``msg:`` last.

Durations outside 0 to ``MAX_DURATION_MINUTES`` are dropped like any other
malformed value.

Malformed fragments are dropped rather than failing the whole command; the
parse only fails when there is no recognised action word. The keyword
matcher is the second tier for loose text that the grammar rejects.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import DEFAULT_TIMINGS
from .models import (
    CATEGORY_APPS,
    GRAMMAR_ACTIONS,
    MAX_DURATION_MINUTES,
    Action,
    ParsedCommand,
    RestrictionType,
    lookup_action,
    lookup_restriction_type,
)

logger = logging.getLogger("parser")

MESSAGE_KEY = "msg"


def parse_command(text: str) -> Optional[ParsedCommand]:
    action: Optional[Action] = None
    action_seen = False
    apps: list[str] = []
    duration: Optional[int] = None
    message: Optional[str] = None
    restriction_type = None

    remaining = text.strip()
    while remaining:
        token, _, rest = remaining.partition(" ")
        rest = rest.lstrip()
        lowered = token.lower()

        if ":" in token:
            key, _, value = token.partition(":")
            key = key.strip().lower()
            if key == MESSAGE_KEY:
                # Message keeps its case and swallows every remaining token.
                message = " ".join([value] + rest.split()).strip() or None
                break
            value = value.strip().lower()
            if key == "apps":
                apps = [a.strip() for a in value.split(",") if a.strip()]
            elif key in ("duration", "minutes"):
                try:
                    number = int(value)
                except ValueError:
                    logger.debug(f"PARSE | ignoring non-integer {key}:{value}")
                else:
                    if 0 <= number <= MAX_DURATION_MINUTES:
                        duration = number
                    else:
                        logger.warning(f"PARSE | ignoring out-of-range {key}:{value}")
            elif key == "type":
                restriction_type = lookup_restriction_type(value)
            else:
                logger.debug(f"PARSE | ignoring unknown key '{key}'")
        elif not action_seen:
            action_seen = True
            candidate = lookup_action(lowered)
            if candidate in GRAMMAR_ACTIONS:
                action = candidate
        remaining = rest

    if action is None:
        logger.info(f"PARSE | no action in '{text}'")
        return None

    return ParsedCommand(
        action=action,
        apps=apps or None,
        duration_minutes=duration,
        message=message,
        restriction_type=restriction_type,
    )


def match_keywords(text: str) -> Optional[ParsedCommand]:
    """Substring fallback for text the grammar parser rejected."""
    lowered = text.lower()
    if "allow" in lowered or "enable" in lowered:
        return ParsedCommand(action=Action.ALLOW)
    if "shutdown" in lowered:
        return ParsedCommand(action=Action.SHUTDOWN)
    if "warning" in lowered:
        return ParsedCommand(action=Action.WARNING, duration_minutes=DEFAULT_TIMINGS.default_warning_minutes)
    logger.warning(f"PARSE | unrecognised command '{text}'")
    return None


def interpret(text: str) -> Optional[ParsedCommand]:
    """Grammar first, keywords second."""
    parsed = parse_command(text)
    if parsed is not None:
        return parsed
    logger.info(f"PARSE | falling back to keyword matching for '{text}'")
    return match_keywords(text)


def format_command(command: ParsedCommand) -> str:
    """Render a structured command in the wire grammar."""
    action = command.action
    apps = list(command.apps or [])
    parts: list[str] = []

    if action == Action.BLOCK_APP:
        parts.append(Action.BLOCK.value)
    elif action == Action.SCHEDULE_RESTRICTION:
        kind = command.restriction_type
        if kind == RestrictionType.BEDTIME:
            parts.append(Action.BEDTIME.value)
        elif kind == RestrictionType.EDUCATIONAL:
            parts.append(Action.EDUCATIONAL.value)
        elif kind in CATEGORY_APPS:
            parts.append(Action.BLOCK.value)
            apps = apps or [CATEGORY_APPS[kind]]
        else:
            parts.append(Action.SHUTDOWN.value)
    else:
        parts.append(action.value)

    if apps:
        parts.append("apps:" + ",".join(apps))

    if command.duration_minutes is not None:
        key = "minutes" if action in (Action.WARNING, Action.EXTEND) else "duration"
        parts.append(f"{key}:{command.duration_minutes}")

    if command.restriction_type is not None and action != Action.SCHEDULE_RESTRICTION:
        parts.append(f"type:{command.restriction_type.value.lower()}")

    if command.message:
        parts.append(f"{MESSAGE_KEY}:{command.message}")

    return " ".join(parts)
