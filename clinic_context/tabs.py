"""
Tab sessions: one resolver + synchronizer per open browser tab.

Tabs of the same origin share a StorageArea, so a selection made in one
tab reaches the others through storage events.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from clinic_context.patient_context import (
    ContextResolver,
    CrossTabSynchronizer,
    SlotStore,
    StorageArea,
    StorageAreaRegistry,
    StorageError,
)

logger = logging.getLogger("clinic-context")


@dataclass
class TabSession:
    """Everything the server holds for one open tab."""
    tab_id: str
    origin: str
    resolver: ContextResolver
    synchronizer: CrossTabSynchronizer
    opened_at: float = 0.0
    _removers: List[Callable[[], None]] = field(default_factory=list)

    def snapshot(self) -> Dict[str, Any]:
        data = self.resolver.snapshot()
        data["origin"] = self.origin
        return data

    def on_change(self, listener: Callable[["TabSession"], None]) -> None:
        """Call `listener(session)` whenever the active patient changes."""
        self._removers.append(self.resolver.on_change(lambda old, new: listener(self)))

    def close(self) -> None:
        self.synchronizer.stop()
        for remove in self._removers:
            remove()
        self._removers.clear()


class TabManager:
    """Opens, finds and closes tab sessions across origins."""

    def __init__(self, registry: Optional[StorageAreaRegistry] = None):
        self.registry = registry or StorageAreaRegistry()
        self.tabs: Dict[str, TabSession] = {}

        self.stats = {
            'tabs_opened': 0,
            'tabs_closed': 0,
        }

    def area(self, origin: str) -> StorageArea:
        return self.registry.get(origin)

    def find_area(self, origin: str) -> Optional[StorageArea]:
        return self.registry.find(origin)

    def open_tab(self, origin: str, tab_id: Optional[str] = None) -> TabSession:
        tab_id = tab_id or str(uuid.uuid4())
        if tab_id in self.tabs:
            raise ValueError(f"Tab already open: {tab_id}")

        try:
            area: Optional[StorageArea] = self.area(origin)
        except StorageError as e:
            logger.warning(f"Storage unavailable for {origin}, tab {tab_id} runs without it: {e}")
            area = None

        resolver = ContextResolver(SlotStore(area, tab_id))
        synchronizer = CrossTabSynchronizer(resolver, area).start()

        session = TabSession(
            tab_id=tab_id,
            origin=origin,
            resolver=resolver,
            synchronizer=synchronizer,
            opened_at=time.time(),
        )
        self.tabs[tab_id] = session
        self.stats['tabs_opened'] += 1

        logger.info(f"Tab opened: {tab_id} (origin={origin}, open tabs={len(self.tabs)})")
        return session

    def get_tab(self, tab_id: str, origin: Optional[str] = None) -> Optional[TabSession]:
        session = self.tabs.get(tab_id)
        if session is None:
            return None
        if origin is not None and session.origin != origin:
            return None
        return session

    def close_tab(self, tab_id: str) -> bool:
        session = self.tabs.pop(tab_id, None)
        if session is None:
            return False
        session.close()
        self.stats['tabs_closed'] += 1
        logger.info(f"Tab closed: {tab_id} (open tabs={len(self.tabs)})")
        return True

    def tabs_for(self, origin: str) -> List[TabSession]:
        return [s for s in self.tabs.values() if s.origin == origin]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'open_tabs': len(self.tabs),
            'origins': len(self.registry.origins()),
            'storage_backend': self.registry.backend,
        }


# Global manager instance
_manager: Optional[TabManager] = None


def get_tab_manager() -> TabManager:
    """Get or create the global tab manager."""
    global _manager
    if _manager is None:
        _manager = TabManager(StorageAreaRegistry.from_env())
    return _manager


def set_tab_manager(manager: Optional[TabManager]) -> None:
    global _manager
    _manager = manager
