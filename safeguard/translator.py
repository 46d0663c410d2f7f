"""
Natural-language translation boundary.

An external inference capability turns free text ("no more YouTube until
homework is done") into the same ParsedCommand the grammar parser produces.
Only the contract lives here: the prompt handed to the model, the schema its
reply must satisfy, and the fallback used when it fails.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional, Protocol

from pydantic import ValidationError

from .config import DEFAULT_TIMINGS
from .models import Action, ParsedCommand, RestrictionType
from .parser import match_keywords

logger = logging.getLogger("translator")

Completion = Callable[[str], Awaitable[str]]


class TranslationError(Exception):
    """The inference backend failed or produced nothing usable."""


class Translator(Protocol):
    async def translate(self, text: str) -> ParsedCommand: ...


PROMPT_TEMPLATE = """\
You are SafeGuard, a family parental control assistant. Parse this natural language command into a structured JSON response.

Available actions: {actions}
Available restriction types: {restriction_types}

Parse this command: "{text}"

Respond with ONLY valid JSON in this exact format:
{{
  "action": "shutdown|warning|allow|extend|blockApp|scheduleRestriction",
  "durationMinutes": 30,
  "apps": ["games", "youtube"],
  "message": "Custom message to child",
  "restrictionType": "games|bedtime|educational|socialOnly|allApps"
}}

JSON Response:
"""

_DECODER = json.JSONDecoder()


def build_prompt(text: str) -> str:
    return PROMPT_TEMPLATE.format(
        actions=", ".join(f'"{a.value}"' for a in Action),
        restriction_types=", ".join(f'"{r.value}"' for r in RestrictionType),
        text=text.replace('"', "'"),
    )


def parse_reply(reply: str) -> ParsedCommand:
    """
    Validate a model reply against the ParsedCommand schema.

    Models often wrap the JSON in prose or code fences, so the first
    complete JSON object is decoded and anything after it is ignored.
    """
    reply = reply or ""
    start = reply.find("{")
    if start < 0:
        raise TranslationError("reply contains no JSON object")
    try:
        _, end = _DECODER.raw_decode(reply, start)
    except ValueError as exc:
        raise TranslationError(f"reply JSON is malformed: {exc}") from exc
    return ParsedCommand.model_validate_json(reply[start:end])


class CompletionTranslator:
    """Translator backed by a text-completion callable (local or hosted model)."""

    def __init__(self, complete: Completion) -> None:
        self._complete = complete

    async def translate(self, text: str) -> ParsedCommand:
        reply = await self._complete(build_prompt(text))
        command = parse_reply(reply)
        logger.info(f"TRANSLATE | '{text}' -> action={command.action.value}")
        return command


async def translate_with_fallback(
    translator: Optional[Translator],
    text: str,
    timeout: float = DEFAULT_TIMINGS.translator_timeout_seconds,
) -> Optional[ParsedCommand]:
    """
    Translate free text, falling back to keyword matching when the translator
    raises, times out, or returns something that fails schema validation.
    """
    if translator is None:
        return match_keywords(text)

    try:
        return await asyncio.wait_for(translator.translate(text), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"TRANSLATE | timed out after {timeout}s for '{text}'")
    except ValidationError as exc:
        logger.warning(f"TRANSLATE | schema mismatch for '{text}': {exc.error_count()} errors")
    except Exception as exc:
        logger.warning(f"TRANSLATE | failed for '{text}': {exc!r}")
    return match_keywords(text)
