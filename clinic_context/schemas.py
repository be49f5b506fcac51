"""
Pydantic schemas for data validation.
Defines the request/response bodies of the context API and WebSocket.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from clinic_context.patient_context import RouteInfo, SelectionDetails


class TabAction(str, Enum):
    NAVIGATE = "NAVIGATE"
    SELECT = "SELECT"
    CLEAR = "CLEAR"
    PONG = "PONG"


class NavigateRequest(BaseModel):
    """A client-side navigation reported by a tab."""
    ready: bool = True
    query: Dict[str, Union[str, List[str]]] = Field(default_factory=dict)
    path: str = ""

    def to_route(self) -> RouteInfo:
        return RouteInfo(is_ready=self.ready, query=dict(self.query), path=self.path)


class SelectionRequest(BaseModel):
    """Explicit patient selection (e.g. "view" in a patient list)."""
    patient_id: str = Field(min_length=1)
    patient_name: Optional[str] = None
    acting_doctor_id: Optional[str] = None
    acting_doctor_name: Optional[str] = None
    acting_role: Optional[str] = None
    source_page: Optional[str] = None

    def to_details(self) -> SelectionDetails:
        return SelectionDetails(
            patient_name=self.patient_name,
            acting_doctor_id=self.acting_doctor_id,
            acting_doctor_name=self.acting_doctor_name,
            acting_role=self.acting_role,
            source_page=self.source_page,
        )


class SlotWriteRequest(BaseModel):
    """Raw write into a storage slot; None removes the key."""
    value: Optional[str] = None


class ContextSnapshot(BaseModel):
    """The active patient context of one tab."""
    tab_id: str
    origin: str
    resolved: bool
    active_patient_id: Optional[str] = None
    body_attributes: Dict[str, str] = Field(default_factory=dict)


class ViewTargetResponse(BaseModel):
    """Whose data a dashboard should show."""
    target_patient_id: str
    self_view: bool


class WebSocketMessage(BaseModel):
    """Message structure for tab WebSocket communication."""
    type: str  # CONTEXT_UPDATE, PING, ERROR
    data: Any = None
