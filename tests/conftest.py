import os

# File logging off before the app module configures handlers
os.environ.setdefault("CLINIC_LOG_FILE", "")
os.environ.setdefault("PATIENT_CONTEXT_BACKEND", "memory")

import pytest

from clinic_context.patient_context import (
    ContextResolver,
    CrossTabSynchronizer,
    MemoryBackend,
    SlotStore,
    StorageArea,
    StorageAreaRegistry,
)
from clinic_context.tabs import TabManager, set_tab_manager

ORIGIN = "https://clinic.test"
PATIENT_A = "123e4567-e89b-12d3-a456-426614174000"
PATIENT_B = "9b2f6c1e-3d4a-4f5b-8c6d-7e8f9a0b1c2d"


class Tab:
    """A resolver and synchronizer wired to a shared area, like one browser tab."""

    def __init__(self, area, tab_id):
        self.slots = SlotStore(area, tab_id)
        self.resolver = ContextResolver(self.slots)
        self.sync = CrossTabSynchronizer(self.resolver, area).start()


@pytest.fixture
def area():
    return StorageArea(ORIGIN, MemoryBackend())


@pytest.fixture
def make_tab(area):
    tabs = []

    def _make(tab_id="tab-1", shared_area=area):
        tab = Tab(shared_area, tab_id)
        tabs.append(tab)
        return tab

    yield _make
    for tab in tabs:
        tab.sync.stop()


@pytest.fixture
def manager():
    mgr = TabManager(StorageAreaRegistry(backend="memory"))
    set_tab_manager(mgr)
    yield mgr
    set_tab_manager(None)
