"""
Collaborator interfaces for the child device.

The enforcer applies opaque restriction directives at the OS level; the
advisory display shows the countdown a ``warning`` asks for. Both are
platform specific. The logging implementations let the relay run on a host
that has no enforcement capability.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger("enforcer")


class Enforcer(ABC):
    @abstractmethod
    def apply(self, restrictions: dict) -> None:
        """Apply a restriction directive (see ``POLICY_TEMPLATES``)."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every restriction this app has applied."""


class AdvisoryDisplay(ABC):
    @abstractmethod
    def show(self, minutes: int, message: Optional[str]) -> None: ...

    @abstractmethod
    def update(self, minutes: int, message: Optional[str]) -> None: ...

    @abstractmethod
    def hide(self) -> None: ...


class LoggingEnforcer(Enforcer):
    def __init__(self) -> None:
        self.current: dict = {}

    def apply(self, restrictions: dict) -> None:
        self.current = dict(restrictions)
        logger.info(f"ENFORCER | applied {restrictions}")

    def clear(self) -> None:
        self.current = {}
        logger.info("ENFORCER | cleared all restrictions")


class LoggingAdvisoryDisplay(AdvisoryDisplay):
    def show(self, minutes: int, message: Optional[str]) -> None:
        logger.info(f"ADVISORY | show {minutes}m message='{message or ''}'")

    def update(self, minutes: int, message: Optional[str]) -> None:
        logger.info(f"ADVISORY | update {minutes}m message='{message or ''}'")

    def hide(self) -> None:
        logger.info("ADVISORY | hide")
