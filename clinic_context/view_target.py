"""
View Target: Whose Chart a Dashboard Shows

Pages that display a patient's data pick their subject from the signed-in
user, the stored selection and the URL. Staff may look at another
patient's chart; everyone else sees their own. When nothing usable is
found the page shows the signed-in user's own profile instead of failing.
"""

from __future__ import annotations

import unicodedata
from typing import Optional

from clinic_context.patient_context.identifiers import clean_uuid, is_valid_uuid, parse_stored

STAFF_ROLES = ("doctor", "radiologo", "enfermero")


def normalize_role(role: Optional[str]) -> str:
    """Lower-case a role name and drop accents ("Radiólogo" -> "radiologo")."""
    decomposed = unicodedata.normalize("NFD", role or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def can_view_others(role: Optional[str]) -> bool:
    return normalize_role(role) in STAFF_ROLES


def resolve_view_target(
    current_user_id: str,
    role: Optional[str],
    query_id: Optional[str] = None,
    stored_raw: Optional[str] = None,
) -> str:
    """
    Pick the patient a dashboard should show.

    Args:
        current_user_id: The signed-in user
        role: The signed-in user's role name
        query_id: `id` from the URL, if any
        stored_raw: Raw value of the primary patient slot, if any

    Returns:
        The stored selection for staff, else a valid URL id, else the
        signed-in user's own id
    """
    stored_id = clean_uuid(parse_stored(stored_raw))
    url_id = clean_uuid(query_id)

    if (
        can_view_others(role)
        and stored_id
        and stored_id != current_user_id
        and is_valid_uuid(stored_id)
    ):
        return stored_id

    if is_valid_uuid(url_id):
        return url_id

    return current_user_id
