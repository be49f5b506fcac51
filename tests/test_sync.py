import json

from clinic_context.patient_context import KNOWN_SLOTS, RouteInfo, StorageEvent

from .conftest import PATIENT_A, PATIENT_B


def test_other_tab_selection_is_adopted_and_remirrored(area, make_tab):
    here = make_tab("tab-1")
    there = make_tab("tab-2")
    here.resolver.resolve(RouteInfo(query={"id": "old-id"}))

    # Another tab writes only the primary slot
    there.slots.write_slot("targetProfileId", json.dumps("new-id"))

    assert here.resolver.active_patient_id == "new-id"
    assert {name: area.get_item(name) for name in KNOWN_SLOTS} == {
        name: '"new-id"' for name in KNOWN_SLOTS
    }


def test_all_tabs_converge(area, make_tab):
    tabs = [make_tab(f"tab-{i}") for i in range(3)]
    tabs[0].resolver.select(PATIENT_A)
    assert [t.resolver.active_patient_id for t in tabs] == [PATIENT_A] * 3

    tabs[2].resolver.select(PATIENT_B)
    assert [t.resolver.active_patient_id for t in tabs] == [PATIENT_B] * 3
    assert set(area.snapshot().values()) == {json.dumps(PATIENT_B)}


def test_external_module_write_is_adopted(area, make_tab):
    tab = make_tab("tab-1")
    area.set_item("patientProfileId", PATIENT_A)
    assert tab.resolver.active_patient_id == PATIENT_A
    assert area.get_item("patientProfileId") == json.dumps(PATIENT_A)
    assert area.get_item("targetProfileId") == json.dumps(PATIENT_A)


def test_unknown_keys_and_empty_values_are_ignored(make_tab):
    tab = make_tab("tab-1")
    tab.resolver.select(PATIENT_A)

    assert not tab.sync.handle_event(StorageEvent("navExpanded", None, "true"))
    assert not tab.sync.handle_event(StorageEvent("targetProfileId", '"x"', None))
    assert not tab.sync.handle_event(StorageEvent("targetProfileId", None, "null"))
    assert not tab.sync.handle_event(StorageEvent("targetProfileId", None, json.dumps(PATIENT_A)))
    assert tab.resolver.active_patient_id == PATIENT_A


def test_removal_in_other_tab_keeps_context(area, make_tab):
    here = make_tab("tab-1")
    there = make_tab("tab-2")
    here.resolver.select(PATIENT_A)
    there.resolver.clear()
    assert here.resolver.active_patient_id == PATIENT_A
    assert there.resolver.active_patient_id is None


def test_stopped_synchronizer_hears_nothing(area, make_tab):
    tab = make_tab("tab-1")
    tab.sync.stop()
    tab.sync.stop()
    area.set_item("targetProfileId", json.dumps(PATIENT_A))
    assert tab.resolver.active_patient_id is None
    assert area.subscriber_count == 0


def test_context_manager_subscription(area, make_tab):
    from clinic_context.patient_context import ContextResolver, CrossTabSynchronizer, SlotStore

    resolver = ContextResolver(SlotStore(area, "tab-9"))
    with CrossTabSynchronizer(resolver, area) as sync:
        assert sync.active
        area.set_item("selectedPatientId", json.dumps(PATIENT_B))
    assert not sync.active
    assert resolver.active_patient_id == PATIENT_B


def test_no_area_start_is_noop():
    from clinic_context.patient_context import ContextResolver, CrossTabSynchronizer, SlotStore

    sync = CrossTabSynchronizer(ContextResolver(SlotStore(None, "ssr")), None).start()
    assert not sync.active
