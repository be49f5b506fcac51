"""
Patient Context API Routes

REST access to tab sessions and the origin storage areas behind them.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException

from clinic_context.patient_context.key_store import StorageError
from clinic_context.patient_context.resolver import PRIMARY_SLOT
from clinic_context.schemas import (
    ContextSnapshot,
    NavigateRequest,
    SelectionRequest,
    SlotWriteRequest,
    ViewTargetResponse,
)
from clinic_context.tabs import TabSession, get_tab_manager
from clinic_context.view_target import resolve_view_target

logger = logging.getLogger("clinic-context")

router = APIRouter(prefix="/context", tags=["Patient Context"])


def _require_tab(origin: str, tab_id: str) -> TabSession:
    session = get_tab_manager().get_tab(tab_id, origin=origin)
    if session is None:
        logger.warning(f"Unknown tab: {origin}/{tab_id}")
        raise HTTPException(status_code=404, detail="Tab not found")
    return session


# ============================================================
# TABS
# ============================================================

@router.post("/{origin}/tabs", response_model=ContextSnapshot, status_code=201)
async def open_tab(origin: str, tab_id: Optional[str] = None):
    """Open a tab session; its context stays unresolved until the first navigation."""
    try:
        session = get_tab_manager().open_tab(origin, tab_id=tab_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.snapshot()


@router.get("/{origin}/tabs/{tab_id}", response_model=ContextSnapshot)
async def get_tab_context(origin: str, tab_id: str):
    return _require_tab(origin, tab_id).snapshot()


@router.delete("/{origin}/tabs/{tab_id}")
async def close_tab(origin: str, tab_id: str):
    _require_tab(origin, tab_id)
    get_tab_manager().close_tab(tab_id)
    return {"status": "closed", "tab_id": tab_id}


@router.post("/{origin}/tabs/{tab_id}/navigate", response_model=ContextSnapshot)
async def navigate(origin: str, tab_id: str, request: NavigateRequest):
    """Run context resolution for a navigation in this tab."""
    session = _require_tab(origin, tab_id)
    logger.debug(f"Navigate {tab_id}: path={request.path!r} ready={request.ready} query={request.query}")
    session.resolver.resolve(request.to_route())
    return session.snapshot()


@router.post("/{origin}/tabs/{tab_id}/select", response_model=ContextSnapshot)
async def select_patient(origin: str, tab_id: str, request: SelectionRequest):
    session = _require_tab(origin, tab_id)
    try:
        session.resolver.select(request.patient_id, request.to_details())
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return session.snapshot()


@router.post("/{origin}/tabs/{tab_id}/clear", response_model=ContextSnapshot)
async def clear_patient(origin: str, tab_id: str):
    session = _require_tab(origin, tab_id)
    session.resolver.clear()
    return session.snapshot()


@router.get("/{origin}/tabs/{tab_id}/view-target", response_model=ViewTargetResponse)
async def view_target(
    origin: str,
    tab_id: str,
    user_id: str,
    role: Optional[str] = None,
    id: Optional[str] = None,
):
    """Whose dashboard this tab should show for the signed-in user."""
    session = _require_tab(origin, tab_id)
    stored_raw = session.resolver.slots.read_slot(PRIMARY_SLOT)
    target = resolve_view_target(user_id, role, query_id=id, stored_raw=stored_raw)
    return ViewTargetResponse(target_patient_id=target, self_view=(target == user_id))


# ============================================================
# SLOTS
# ============================================================

@router.get("/{origin}/slots")
async def get_slots(origin: str):
    """Raw values of every key in the origin's storage area."""
    try:
        area = get_tab_manager().find_area(origin)
        if area is None:
            raise HTTPException(status_code=404, detail="Origin not found")
        slots = area.snapshot()
    except StorageError as e:
        logger.error(f"Cannot read storage for {origin}: {e}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return {"origin": origin, "slots": slots}


@router.put("/{origin}/slots/{key}")
async def write_slot(origin: str, key: str, request: SlotWriteRequest):
    """
    Write a key as another module would. Every open tab of the origin is
    notified, and tabs adopt the value if the key is a known patient slot.
    """
    try:
        area = get_tab_manager().area(origin)
        if request.value is None:
            area.remove_item(key)
        else:
            area.set_item(key, request.value)
    except StorageError as e:
        logger.error(f"Slot write {origin}/{key} failed: {e}")
        raise HTTPException(status_code=507, detail=f"Storage write failed: {e}")
    return {"origin": origin, "key": key, "value": request.value}
