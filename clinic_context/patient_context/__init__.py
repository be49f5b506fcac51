"""
Patient Context Module: Active Patient Resolution and Sync

Keeps track of which patient is "in focus" for each open tab of the clinic
application.

Components:
- identifiers: Parse, validate and encode patient ids
- StorageArea / SlotStore: Origin-scoped persistent slots with change events
- ContextResolver: Resolves the active patient on navigation and mirrors it
- CrossTabSynchronizer: Adopts changes made by other tabs

Design Philosophy:
1. The URL wins: a deep-linked id is authoritative for that page load
2. Storage is a convenience: failures degrade to "nothing stored"
3. Mirroring: every known slot name holds the same value
"""

from .identifiers import (
    clean_uuid,
    encode_for_store,
    first_query_value,
    is_valid_uuid,
    parse_stored,
)
from .key_store import (
    DiskBackend,
    MemoryBackend,
    SlotStore,
    StorageArea,
    StorageAreaRegistry,
    StorageError,
    StorageEvent,
    StorageQuotaExceeded,
    StorageUnavailable,
)
from .resolver import (
    KNOWN_SLOTS,
    ContextResolver,
    Resolved,
    RouteInfo,
    SelectionDetails,
    Unresolved,
)
from .sync import CrossTabSynchronizer

__all__ = [
    "clean_uuid",
    "encode_for_store",
    "first_query_value",
    "is_valid_uuid",
    "parse_stored",
    "DiskBackend",
    "MemoryBackend",
    "SlotStore",
    "StorageArea",
    "StorageAreaRegistry",
    "StorageError",
    "StorageEvent",
    "StorageQuotaExceeded",
    "StorageUnavailable",
    "KNOWN_SLOTS",
    "ContextResolver",
    "Resolved",
    "RouteInfo",
    "SelectionDetails",
    "Unresolved",
    "CrossTabSynchronizer",
]
