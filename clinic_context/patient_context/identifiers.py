"""
Patient Identifiers: Parsing and Validation Across Storage Formats

Patient ids reach the context layer in several textual shapes:
- JSON-encoded strings written by the shell ('"123e4567-..."')
- Raw strings written by older pages ('123e4567-...')
- Query parameters that may arrive as a single value or a list

Everything that touches a stored or linked id goes through this module so
the shapes are handled the same way everywhere.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

# 8-4-4-4-12 hex, version 1-5, RFC 4122 variant
UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}",
    re.IGNORECASE,
)

# Values that older pages have been known to persist by accident
ABSENT_TOKENS = frozenset({"", "null", "undefined"})


def is_absent(value: Optional[str]) -> bool:
    """True when a value means "no selection"."""
    return value is None or value.strip() in ABSENT_TOKENS


def parse_stored(raw: Optional[str]) -> Optional[str]:
    """
    Decode a stored slot value into a patient id.

    Supports values saved as JSON strings as well as plain text. A value that
    starts with a quote but is not valid JSON is returned literally.

    Args:
        raw: The raw slot value, or None if the slot is unset

    Returns:
        The patient id, or None if the value is blank or an absent token
    """
    if not raw:
        return None

    value: Any = raw
    if raw.startswith('"'):
        try:
            value = json.loads(raw)
        except ValueError:
            value = raw

    if not isinstance(value, str):
        value = str(value)

    if is_absent(value):
        return None
    return value


def is_valid_uuid(s: Optional[str]) -> bool:
    """Check that a string is a canonical v1-v5 UUID."""
    if not isinstance(s, str):
        return False
    return UUID_PATTERN.fullmatch(s) is not None


def encode_for_store(patient_id: str) -> str:
    """
    JSON-encode a patient id for writing into a slot.

    Raises:
        ValueError: if the id is blank or one of the absent tokens
    """
    if is_absent(patient_id):
        raise ValueError(f"Refusing to store absent patient id: {patient_id!r}")
    return json.dumps(patient_id)


def clean_uuid(s: Optional[str]) -> str:
    """Strip whitespace and any wrapping quotes from an id-like string."""
    return (s or "").strip().strip("'\"")


def first_query_value(value: Any) -> Optional[str]:
    """
    Reduce a query parameter to a single string.

    Routing layers hand over repeated parameters as a list; the first
    element wins. Empty lists and empty strings count as missing.
    """
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return None
    value = str(value)
    return value or None
