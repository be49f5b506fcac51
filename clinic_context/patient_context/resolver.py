"""
Context Resolver: Which Patient Is Active in This Tab

On every navigation the resolver decides the active patient:
1. An `id` query parameter wins (deep links are taken as given)
2. Otherwise the first known slot holding a value
3. A new value is mirrored into every known slot

The slots are redundant aliases of one logical value. Several generations
of pages read different names, so all of them are kept in step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .identifiers import encode_for_store, first_query_value, is_absent, parse_stored
from .key_store import SlotStore

logger = logging.getLogger(__name__)

# Probe order for read_any_known_slot(); every one of them is mirrored
PRIMARY_SLOT = "targetProfileId"
KNOWN_SLOTS = (
    PRIMARY_SLOT,
    "selectedPatientId",
    "currentPatientId",
    "patientProfileId",
)

# Companion values written next to an explicit selection
PATIENT_NAME_SLOT = "targetProfileName"
ACTING_DOCTOR_ID_SLOT = "actingDoctorId"
ACTING_DOCTOR_NAME_SLOT = "actingDoctorName"
ACTING_ROLE_SLOT = "actingRole"
SOURCE_PAGE_SLOT = "sourcePage"

BODY_ATTRIBUTE = "data-patient-id"


# ============================================================
# STATE
# ============================================================

@dataclass(frozen=True)
class Unresolved:
    """Routing information has not been available yet."""


@dataclass(frozen=True)
class Resolved:
    """Resolution ran; patient_id is None when nothing is selected."""
    patient_id: Optional[str] = None


ContextState = Union[Unresolved, Resolved]


@dataclass(frozen=True)
class RouteInfo:
    """
    What the routing layer knows about the current page.

    Attributes:
        is_ready: False until the query string has been parsed
        query: Parsed query parameters; values may be str or a list of str
        path: Current page path (informational)
    """
    is_ready: bool = True
    query: Mapping[str, Any] = field(default_factory=dict)
    path: str = ""

    @property
    def query_id(self) -> Optional[str]:
        return first_query_value(self.query.get("id"))


@dataclass(frozen=True)
class SelectionDetails:
    """Optional context recorded with an explicit patient selection."""
    patient_name: Optional[str] = None
    acting_doctor_id: Optional[str] = None
    acting_doctor_name: Optional[str] = None
    acting_role: Optional[str] = None
    source_page: Optional[str] = None

    def slot_values(self) -> Dict[str, str]:
        values = {
            PATIENT_NAME_SLOT: self.patient_name,
            ACTING_DOCTOR_ID_SLOT: self.acting_doctor_id,
            ACTING_DOCTOR_NAME_SLOT: self.acting_doctor_name,
            ACTING_ROLE_SLOT: self.acting_role,
            SOURCE_PAGE_SLOT: self.source_page,
        }
        return {k: v for k, v in values.items() if v}


ChangeListener = Callable[[Optional[str], Optional[str]], None]


# ============================================================
# RESOLVER
# ============================================================

class ContextResolver:
    """
    Holds the active patient for one tab and keeps the known slots mirrored.

    The resolver never performs I/O beyond the slot store and never raises
    for storage problems.
    """

    def __init__(self, slots: SlotStore, known_slots: tuple = KNOWN_SLOTS):
        self.slots = slots
        self.known_slots = tuple(known_slots)
        self.state: ContextState = Unresolved()
        self.body_attributes: Dict[str, str] = {}
        self._listeners: List[ChangeListener] = []

    @property
    def tab_id(self) -> str:
        return self.slots.context_id

    @property
    def active_patient_id(self) -> Optional[str]:
        if isinstance(self.state, Resolved):
            return self.state.patient_id
        return None

    @property
    def is_resolved(self) -> bool:
        return isinstance(self.state, Resolved)

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Register `listener(old_id, new_id)`; returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # -------------------- reads --------------------

    def read_any_known_slot(self) -> Optional[str]:
        for name in self.known_slots:
            value = parse_stored(self.slots.read_slot(name))
            if value:
                return value
        return None

    # -------------------- transitions --------------------

    def resolve(self, route: RouteInfo) -> ContextState:
        """
        Run resolution for a navigation event.

        Does nothing until the route is ready. The query id takes priority
        over stored values; the state only changes (and slots are only
        written) when the candidate differs from the current value.
        """
        if not route.is_ready:
            logger.debug(f"[CONTEXT] {self.tab_id}: route not ready, skipping")
            return self.state

        query_id = route.query_id
        if query_id is not None and is_absent(query_id):
            query_id = None

        candidate = query_id or self.read_any_known_slot()
        current = self.active_patient_id

        if candidate and candidate != current:
            source = "query" if query_id else "storage"
            logger.info(f"[CONTEXT] {self.tab_id}: {current} -> {candidate} (from {source})")
            self.adopt(candidate)
        elif not self.is_resolved:
            self.state = Resolved(current)

        return self.state

    def mirror(self, patient_id: str) -> None:
        """Write the encoded id into every known slot."""
        try:
            encoded = encode_for_store(patient_id)
        except ValueError as e:
            logger.warning(f"[CONTEXT] {self.tab_id}: not mirroring: {e}")
            return

        with self.slots.batch():
            for name in self.known_slots:
                self.slots.write_slot(name, encoded)

    def adopt(self, patient_id: str) -> None:
        """Make `patient_id` the active patient and mirror it."""
        old = self.active_patient_id
        self.state = Resolved(patient_id)
        self._update_body_attributes()
        self.mirror(patient_id)
        if old != patient_id:
            self._notify(old, patient_id)

    def select(self, patient_id: str, details: Optional[SelectionDetails] = None) -> None:
        """
        Explicit selection from elsewhere in the UI (e.g. a patient list).

        Companion values are stored as plain strings, the way the pages that
        read them expect.
        """
        if is_absent(patient_id):
            raise ValueError("patient_id is required")

        with self.slots.batch():
            if details is not None:
                for name, value in details.slot_values().items():
                    self.slots.write_slot(name, value)
            if patient_id != self.active_patient_id:
                logger.info(f"[CONTEXT] {self.tab_id}: selected {patient_id}")
                self.adopt(patient_id)
            else:
                self.mirror(patient_id)

    def clear(self) -> None:
        """Forget the active patient in this tab and in every known slot."""
        old = self.active_patient_id
        with self.slots.batch():
            for name in self.known_slots:
                self.slots.remove_slot(name)
        self.state = Resolved(None)
        self._update_body_attributes()
        if old is not None:
            logger.info(f"[CONTEXT] {self.tab_id}: cleared (was {old})")
            self._notify(old, None)

    # -------------------- outbound --------------------

    def page_props(self, props: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Props for the rendered page, with the active patient added."""
        merged = dict(props or {})
        merged["activePatientId"] = self.active_patient_id
        return merged

    def snapshot(self) -> Dict[str, Any]:
        return {
            "tab_id": self.tab_id,
            "resolved": self.is_resolved,
            "active_patient_id": self.active_patient_id,
            "body_attributes": dict(self.body_attributes),
        }

    def _update_body_attributes(self) -> None:
        if self.active_patient_id:
            self.body_attributes[BODY_ATTRIBUTE] = self.active_patient_id
        else:
            self.body_attributes.pop(BODY_ATTRIBUTE, None)

    def _notify(self, old: Optional[str], new: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception as e:
                logger.error(f"[CONTEXT] {self.tab_id}: change listener failed: {e}")
