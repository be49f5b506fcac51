"""
Cross-Tab Synchronizer

Folds slot changes made by other tabs (or by other modules writing straight
into the storage area) into a tab's ContextResolver. Last write wins.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .identifiers import parse_stored
from .key_store import StorageArea, StorageEvent
from .resolver import ContextResolver

logger = logging.getLogger(__name__)


class CrossTabSynchronizer:
    """Subscribes a resolver to its storage area for the lifetime of a view."""

    def __init__(self, resolver: ContextResolver, area: Optional[StorageArea]):
        self.resolver = resolver
        self.area = area
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def active(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> "CrossTabSynchronizer":
        if self.area is None or self._unsubscribe is not None:
            return self
        self._unsubscribe = self.area.subscribe(self.resolver.tab_id, self.handle_event)
        return self

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __enter__(self) -> "CrossTabSynchronizer":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()

    def handle_event(self, event: StorageEvent) -> bool:
        """
        Apply one storage change.

        Returns:
            True if the resolver adopted a new patient id
        """
        if not event.key or event.key not in self.resolver.known_slots:
            return False

        new_id = parse_stored(event.new_value)
        if not new_id or new_id == self.resolver.active_patient_id:
            return False

        logger.info(
            f"[SYNC] {self.resolver.tab_id}: adopting {new_id} "
            f"from {event.key} (written by {event.source or 'external'})"
        )
        self.resolver.adopt(new_id)
        return True
