import json

import pytest

from clinic_context.view_target import can_view_others, normalize_role, resolve_view_target

from .conftest import PATIENT_A, PATIENT_B

SELF = "0f8fad5b-d9cb-469f-a165-70867728950e"


@pytest.mark.parametrize("role,expected", [
    ("Radiólogo", "radiologo"),
    ("Doctor", "doctor"),
    ("ENFERMERO", "enfermero"),
    (None, ""),
])
def test_normalize_role(role, expected):
    assert normalize_role(role) == expected


def test_staff_roles():
    assert can_view_others("Radiólogo")
    assert not can_view_others("Paciente")
    assert not can_view_others("Administrador")


def test_staff_sees_stored_patient():
    assert resolve_view_target(SELF, "Doctor", stored_raw=json.dumps(PATIENT_A)) == PATIENT_A
    assert resolve_view_target(SELF, "Doctor", stored_raw=PATIENT_A) == PATIENT_A


def test_stored_selection_beats_url_for_staff():
    assert resolve_view_target(SELF, "Enfermero", query_id=PATIENT_B, stored_raw=PATIENT_A) == PATIENT_A


def test_patient_role_ignores_stored_selection():
    assert resolve_view_target(SELF, "Paciente", stored_raw=PATIENT_A) == SELF
    assert resolve_view_target(SELF, "Paciente", query_id=PATIENT_B, stored_raw=PATIENT_A) == PATIENT_B


def test_invalid_values_fall_back_to_self():
    assert resolve_view_target(SELF, "Doctor", query_id="legacy-42", stored_raw='"abc"') == SELF
    assert resolve_view_target(SELF, None) == SELF


def test_staff_own_id_in_storage_uses_url():
    assert resolve_view_target(SELF, "Doctor", query_id=PATIENT_B, stored_raw=SELF) == PATIENT_B


def test_quoted_url_id_is_cleaned():
    assert resolve_view_target(SELF, "Paciente", query_id=f'"{PATIENT_B}"') == PATIENT_B
