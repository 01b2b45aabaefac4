"""
pathfinder.engine.storage — Key-Value Store Abstraction
=========================================================

The session budget never reaches for a global; it is handed a
:class:`KeyValueStore`.  Two implementations exist:

- :class:`InMemoryStore` (here) — one dict shared by every clock in the
  process.  Subscribers are notified synchronously, which is enough to
  simulate several tabs in tests.
- :class:`pathfinder.services.kv_store.SqlKeyValueStore` — a ``kv_store``
  table plus PostgreSQL NOTIFY for cross-process change delivery.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

# (key, new_value or None when deleted)
ChangeCallback = Callable[[str, str | None], None]
Unsubscribe = Callable[[], None]


class KeyValueStore(Protocol):
    """Minimal get/set/delete store with change subscriptions."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...

    def subscribe(self, prefix: str, callback: ChangeCallback) -> Unsubscribe: ...


class SubscriberRegistry:
    """Prefix-filtered callback list shared by store implementations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[str, ChangeCallback]] = []

    def add(self, prefix: str, callback: ChangeCallback) -> Unsubscribe:
        entry = (prefix, callback)
        with self._lock:
            self._subscribers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return _unsubscribe

    def publish(self, key: str, value: str | None) -> None:
        with self._lock:
            targets = [cb for prefix, cb in self._subscribers if key.startswith(prefix)]
        for callback in targets:
            try:
                callback(key, value)
            except Exception:
                logger.exception("Store subscriber failed for key %s", key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)


class InMemoryStore:
    """Thread-safe dict-backed :class:`KeyValueStore`."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, str] = dict(initial or {})
        self._subscribers = SubscriberRegistry()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            changed = self._data.get(key) != value
            self._data[key] = value
        if changed:
            self._subscribers.publish(key, value)

    def delete(self, key: str) -> None:
        with self._lock:
            existed = self._data.pop(key, None) is not None
        if existed:
            self._subscribers.publish(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def subscribe(self, prefix: str, callback: ChangeCallback) -> Unsubscribe:
        return self._subscribers.add(prefix, callback)
