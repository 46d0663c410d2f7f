"""
In-memory real-time key-value store.

Stands in for the shared synchronized database both devices talk to.
Paths are slash-separated (``commands/<device>/<command>``); values are plain
dicts. Observers registered on a parent path are told about every child
written beneath it, including the children that already exist when they
subscribe, which mirrors a ``child_added`` listener on a hosted database.

All mutations run on the event loop thread without an await between the
check and the write, so ``delete`` doubles as an atomic compare-and-delete.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger("store")

ChildCallback = Callable[[str, dict], None]


class StoreError(Exception):
    """Raised when the backing store cannot complete a read or write."""


@dataclass
class Subscription:
    path: str
    callback: ChildCallback
    _store: Optional["InMemoryStore"] = field(default=None, repr=False)

    def cancel(self) -> None:
        if self._store is not None:
            self._store._unobserve(self)
            self._store = None

    @property
    def active(self) -> bool:
        return self._store is not None


def _split(path: str) -> tuple[str, ...]:
    parts = tuple(p for p in path.strip("/").split("/") if p)
    if not parts:
        raise StoreError(f"Invalid path: {path!r}")
    return parts


class InMemoryStore:
    def __init__(self) -> None:
        self._data: dict[tuple[str, ...], dict] = {}
        self._observers: list[Subscription] = []

    async def set(self, path: str, value: dict) -> None:
        key = _split(path)
        created = key not in self._data
        self._data[key] = copy.deepcopy(value)
        if created:
            self._notify(key)

    async def get(self, path: str) -> Optional[dict]:
        value = self._data.get(_split(path))
        return copy.deepcopy(value) if value is not None else None

    async def delete(self, path: str) -> bool:
        """Remove a record. Returns True only for the caller that removed it."""
        return self._data.pop(_split(path), None) is not None

    async def children(self, path: str) -> dict[str, dict]:
        parent = _split(path)
        depth = len(parent)
        return {
            key[depth]: copy.deepcopy(value)
            for key, value in self._data.items()
            if len(key) == depth + 1 and key[:depth] == parent
        }

    def clear(self) -> None:
        """Drop every record. Observers stay registered."""
        self._data.clear()

    def observe_child_added(self, path: str, callback: ChildCallback) -> Subscription:
        parent = _split(path)
        sub = Subscription(path="/".join(parent), callback=callback, _store=self)
        self._observers.append(sub)
        depth = len(parent)
        for key, value in list(self._data.items()):
            if len(key) == depth + 1 and key[:depth] == parent:
                self._deliver(sub, key[depth], value)
        return sub

    def _unobserve(self, sub: Subscription) -> None:
        if sub in self._observers:
            self._observers.remove(sub)

    def _notify(self, key: tuple[str, ...]) -> None:
        parent = "/".join(key[:-1])
        for sub in list(self._observers):
            if sub.path == parent:
                self._deliver(sub, key[-1], self._data[key])

    @staticmethod
    def _deliver(sub: Subscription, child_key: str, value: dict) -> None:
        try:
            sub.callback(child_key, copy.deepcopy(value))
        except Exception:
            logger.exception(f"STORE | observer on {sub.path} failed for child={child_key}")
