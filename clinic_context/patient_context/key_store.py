"""
Key Store: Origin-Scoped Persistent Slots

This module models the key-value persistence a browser gives each origin:
- StorageBackend: where the bytes live (memory or disk)
- StorageArea: the origin-wide area shared by every tab, which emits
  StorageEvents to the *other* tabs when a key changes
- SlotStore: a tab's best-effort view of the area

The slot store is a cache, not a system of record. Reads return None and
writes are dropped when the backend is missing or failing; nothing in here
surfaces a storage error to the caller.

Storage backends:
- MemoryBackend: in-process dict, optional byte quota
- DiskBackend: one JSON document per origin
"""

from __future__ import annotations

import json
import logging
import os
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Dict, Iterator, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


# ============================================================
# ERRORS
# ============================================================

class StorageError(Exception):
    """Base class for storage backend failures."""


class StorageUnavailable(StorageError):
    """The backend cannot be read or written at all."""


class StorageQuotaExceeded(StorageError):
    """A write would take the area past its quota."""


# ============================================================
# EVENTS
# ============================================================

@dataclass(frozen=True)
class StorageEvent:
    """
    A change to one key of a storage area.

    Attributes:
        key: The key that changed
        old_value: Value before the change (None if it was unset)
        new_value: Value after the change (None if it was removed)
        source: Context id of the writer
        origin: Name of the storage area
    """
    key: str
    old_value: Optional[str]
    new_value: Optional[str]
    source: Optional[str] = None
    origin: Optional[str] = None


StorageListener = Callable[[StorageEvent], None]


# ============================================================
# BACKENDS
# ============================================================

class StorageBackend(Protocol):
    """
    Raw key-value persistence.

    Implementations may raise StorageError from any method.
    """

    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


def _size_of(items: Dict[str, str]) -> int:
    return sum(len(k) + len(v) for k, v in items.items())


class MemoryBackend:
    """In-process backend. `max_bytes` emulates a storage quota."""

    def __init__(self, max_bytes: Optional[int] = None):
        self._items: Dict[str, str] = {}
        self.max_bytes = max_bytes

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self.max_bytes is not None:
            projected = dict(self._items)
            projected[key] = value
            if _size_of(projected) > self.max_bytes:
                raise StorageQuotaExceeded(
                    f"Writing {key!r} would exceed quota of {self.max_bytes} bytes"
                )
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._items.keys())


class DiskBackend:
    """
    Filesystem backend.

    Directory structure:
    root_dir/
        {safe_origin}.json   (all keys of one origin)
    """

    def __init__(self, root_dir: str, origin: str, max_bytes: Optional[int] = None):
        self.root = Path(root_dir)
        self.max_bytes = max_bytes
        self.path = self.path_for(root_dir, origin)

        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create storage dir {self.root}: {e}") from e

        logger.info(f"[STORE] DiskBackend for {origin!r} at {self.path}")

    @staticmethod
    def path_for(root_dir: str, origin: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in origin)
        return Path(root_dir) / f"{safe[:200] or 'default'}.json"

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageUnavailable(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _save(self, items: Dict[str, str]) -> None:
        tmp = self.path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(items, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageUnavailable(f"Cannot write {self.path}: {e}") from e

    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        if self.max_bytes is not None and _size_of(items) > self.max_bytes:
            raise StorageQuotaExceeded(
                f"Writing {key!r} would exceed quota of {self.max_bytes} bytes"
            )
        self._save(items)

    def remove_item(self, key: str) -> None:
        items = self._load()
        if key in items:
            del items[key]
            self._save(items)

    def keys(self) -> List[str]:
        return list(self._load().keys())


# ============================================================
# STORAGE AREA
# ============================================================

class StorageArea:
    """
    The storage shared by every tab of one origin.

    Changes are announced to subscribers as StorageEvents. A subscriber never
    hears about its own writes. Events are queued and handed out one at a
    time, so a listener that writes back into the area finishes before the
    next event is delivered. Writes made inside `batch()` are announced when
    the outermost batch exits.
    """

    def __init__(self, origin: str, backend: StorageBackend):
        self.origin = origin
        self.backend = backend
        self._listeners: Dict[int, Tuple[str, StorageListener]] = {}
        self._next_token = 0
        self._pending: Deque[StorageEvent] = deque()
        self._batch_depth = 0
        self._dispatching = False

    # -------------------- raw access --------------------

    def get_item(self, key: str) -> Optional[str]:
        return self.backend.get_item(key)

    def set_item(self, key: str, value: str, source: Optional[str] = None) -> None:
        old = self.backend.get_item(key)
        self.backend.set_item(key, value)
        if old != value:
            self._announce(StorageEvent(key, old, value, source, self.origin))

    def remove_item(self, key: str, source: Optional[str] = None) -> None:
        old = self.backend.get_item(key)
        if old is None:
            return
        self.backend.remove_item(key)
        self._announce(StorageEvent(key, old, None, source, self.origin))

    def snapshot(self) -> Dict[str, str]:
        """Return every key/value currently stored."""
        items: Dict[str, str] = {}
        for key in self.backend.keys():
            value = self.backend.get_item(key)
            if value is not None:
                items[key] = value
        return items

    # -------------------- subscriptions --------------------

    def subscribe(self, context_id: str, listener: StorageListener) -> Callable[[], None]:
        """
        Register a listener for changes made by other contexts.

        Returns:
            A callable that removes the listener (safe to call twice)
        """
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = (context_id, listener)
        logger.debug(f"[AREA] {self.origin}: subscribed {context_id} ({len(self._listeners)} total)")

        def unsubscribe() -> None:
            if self._listeners.pop(token, None) is not None:
                logger.debug(f"[AREA] {self.origin}: unsubscribed {context_id}")

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    @contextmanager
    def batch(self) -> Iterator[None]:
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
        if self._batch_depth == 0:
            self._drain()

    # -------------------- delivery --------------------

    def _announce(self, event: StorageEvent) -> None:
        self._pending.append(event)
        if self._batch_depth == 0:
            self._drain()

    def _drain(self) -> None:
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                event = self._pending.popleft()
                for context_id, listener in list(self._listeners.values()):
                    if context_id == event.source:
                        continue
                    try:
                        listener(event)
                    except Exception as e:
                        logger.error(f"[AREA] Listener for {context_id} failed on {event.key}: {e}")
        finally:
            self._dispatching = False


# ============================================================
# SLOT STORE
# ============================================================

class SlotStore:
    """
    One tab's best-effort access to a storage area.

    `area` may be None (no persistent storage in this context). Every
    failure is logged and swallowed.
    """

    def __init__(self, area: Optional[StorageArea], context_id: str):
        self.area = area
        self.context_id = context_id

    @property
    def available(self) -> bool:
        return self.area is not None

    def read_slot(self, name: str) -> Optional[str]:
        if self.area is None:
            return None
        try:
            return self.area.get_item(name)
        except Exception as e:
            logger.debug(f"[SLOTS] read {name} failed: {e}")
            return None

    def write_slot(self, name: str, value: str) -> None:
        if self.area is None:
            return
        try:
            self.area.set_item(name, value, source=self.context_id)
        except Exception as e:
            logger.debug(f"[SLOTS] write {name} discarded: {e}")

    def remove_slot(self, name: str) -> None:
        if self.area is None:
            return
        try:
            self.area.remove_item(name, source=self.context_id)
        except Exception as e:
            logger.debug(f"[SLOTS] remove {name} failed: {e}")

    @contextmanager
    def batch(self) -> Iterator[None]:
        if self.area is None:
            yield
            return
        with self.area.batch():
            yield


# ============================================================
# AREA REGISTRY
# ============================================================

class StorageAreaRegistry:
    """Creates and caches one StorageArea per origin."""

    def __init__(
        self,
        backend: str = "memory",
        root_dir: str = "data/context",
        max_bytes: Optional[int] = None,
    ):
        if backend not in ("memory", "disk"):
            raise ValueError(f"Unknown storage backend: {backend!r}")
        self.backend = backend
        self.root_dir = root_dir
        self.max_bytes = max_bytes
        self._areas: Dict[str, StorageArea] = {}

    def get(self, origin: str) -> StorageArea:
        area = self._areas.get(origin)
        if area is None:
            if self.backend == "disk":
                raw: StorageBackend = DiskBackend(self.root_dir, origin, self.max_bytes)
            else:
                raw = MemoryBackend(self.max_bytes)
            area = StorageArea(origin, raw)
            self._areas[origin] = area
            logger.info(f"[AREA] Created {self.backend} storage area for origin {origin!r}")
        return area

    def find(self, origin: str) -> Optional[StorageArea]:
        """
        Look up an existing area without creating one.

        A disk origin persisted by an earlier run counts as existing.
        """
        area = self._areas.get(origin)
        if area is None and self.backend == "disk":
            if DiskBackend.path_for(self.root_dir, origin).exists():
                return self.get(origin)
        return area

    def origins(self) -> List[str]:
        return list(self._areas.keys())

    @classmethod
    def from_env(cls) -> "StorageAreaRegistry":
        quota = os.getenv("PATIENT_CONTEXT_QUOTA_BYTES")
        return cls(
            backend=os.getenv("PATIENT_CONTEXT_BACKEND", "memory"),
            root_dir=os.getenv("PATIENT_CONTEXT_DIR", "data/context"),
            max_bytes=int(quota) if quota else None,
        )
