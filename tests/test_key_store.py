import json

import pytest

from clinic_context.patient_context.key_store import (
    DiskBackend,
    MemoryBackend,
    SlotStore,
    StorageArea,
    StorageAreaRegistry,
    StorageQuotaExceeded,
    StorageUnavailable,
)


class BrokenBackend:
    """Backend that fails every call, like storage in a locked-down browser."""

    def get_item(self, key):
        raise StorageUnavailable("storage disabled")

    def set_item(self, key, value):
        raise StorageUnavailable("storage disabled")

    def remove_item(self, key):
        raise StorageUnavailable("storage disabled")

    def keys(self):
        raise StorageUnavailable("storage disabled")


class TestSlotStore:
    def test_read_write_remove(self, area):
        slots = SlotStore(area, "tab-1")
        assert slots.read_slot("k") is None
        slots.write_slot("k", "v")
        assert slots.read_slot("k") == "v"
        slots.remove_slot("k")
        assert slots.read_slot("k") is None

    def test_without_area_reads_none_and_drops_writes(self):
        slots = SlotStore(None, "ssr")
        assert not slots.available
        slots.write_slot("k", "v")
        slots.remove_slot("k")
        assert slots.read_slot("k") is None
        with slots.batch():
            slots.write_slot("k", "v")

    def test_broken_backend_never_raises(self):
        slots = SlotStore(StorageArea("o", BrokenBackend()), "tab-1")
        slots.write_slot("k", "v")
        slots.remove_slot("k")
        assert slots.read_slot("k") is None

    def test_quota_exceeded_write_is_discarded(self):
        area = StorageArea("o", MemoryBackend(max_bytes=8))
        slots = SlotStore(area, "tab-1")
        slots.write_slot("k", "1234567890")
        assert slots.read_slot("k") is None
        slots.write_slot("k", "ok")
        assert slots.read_slot("k") == "ok"


class TestMemoryBackend:
    def test_quota(self):
        backend = MemoryBackend(max_bytes=4)
        backend.set_item("a", "b")
        with pytest.raises(StorageQuotaExceeded):
            backend.set_item("c", "dddd")
        assert backend.keys() == ["a"]


class TestDiskBackend:
    def test_persists_between_instances(self, tmp_path):
        DiskBackend(str(tmp_path), "https://clinic.test").set_item("k", '"v"')
        again = DiskBackend(str(tmp_path), "https://clinic.test")
        assert again.get_item("k") == '"v"'
        assert again.keys() == ["k"]

    def test_origin_is_sanitized(self, tmp_path):
        backend = DiskBackend(str(tmp_path), "https://clinic.test:3000/x")
        backend.set_item("k", "v")
        assert backend.path.parent == tmp_path
        assert json.loads(backend.path.read_text()) == {"k": "v"}

    def test_corrupt_file_is_unavailable(self, tmp_path):
        backend = DiskBackend(str(tmp_path), "o")
        backend.path.write_text("{broken")
        with pytest.raises(StorageUnavailable):
            backend.get_item("k")
        assert SlotStore(StorageArea("o", backend), "t").read_slot("k") is None

    def test_remove(self, tmp_path):
        backend = DiskBackend(str(tmp_path), "o")
        backend.set_item("k", "v")
        backend.remove_item("k")
        backend.remove_item("missing")
        assert backend.get_item("k") is None


class TestStorageAreaEvents:
    def test_writer_does_not_hear_itself(self, area):
        heard = {"tab-1": [], "tab-2": []}
        area.subscribe("tab-1", heard["tab-1"].append)
        area.subscribe("tab-2", heard["tab-2"].append)

        SlotStore(area, "tab-1").write_slot("k", "v")

        assert heard["tab-1"] == []
        assert [(e.key, e.old_value, e.new_value, e.source) for e in heard["tab-2"]] == [
            ("k", None, "v", "tab-1")
        ]

    def test_unchanged_value_is_not_announced(self, area):
        heard = []
        area.subscribe("tab-2", heard.append)
        area.set_item("k", "v", source="tab-1")
        area.set_item("k", "v", source="tab-1")
        assert len(heard) == 1

    def test_remove_announces_none(self, area):
        heard = []
        area.subscribe("tab-2", heard.append)
        area.set_item("k", "v", source="tab-1")
        area.remove_item("k", source="tab-1")
        area.remove_item("k", source="tab-1")
        assert [e.new_value for e in heard] == ["v", None]

    def test_unsubscribe(self, area):
        heard = []
        unsubscribe = area.subscribe("tab-2", heard.append)
        unsubscribe()
        unsubscribe()
        area.set_item("k", "v", source="tab-1")
        assert heard == []
        assert area.subscriber_count == 0

    def test_batch_defers_delivery(self, area):
        heard = []
        area.subscribe("tab-2", heard.append)
        with area.batch():
            area.set_item("a", "1", source="tab-1")
            area.set_item("b", "2", source="tab-1")
            assert heard == []
        assert [e.key for e in heard] == ["a", "b"]

    def test_listener_runs_to_completion_before_next_event(self, area):
        order = []

        def echo(event):
            order.append(("start", event.key))
            if event.key == "a":
                area.set_item("echo", "x", source="tab-2")
            order.append(("end", event.key))

        area.subscribe("tab-2", echo)
        area.subscribe("tab-3", lambda e: order.append(("tab-3", e.key)))

        with area.batch():
            area.set_item("a", "1", source="tab-1")
            area.set_item("b", "2", source="tab-1")

        assert order == [
            ("start", "a"), ("end", "a"),
            ("tab-3", "a"),
            ("start", "b"), ("end", "b"),
            ("tab-3", "b"),
            ("tab-3", "echo"),
        ]

    def test_failing_listener_does_not_block_others(self, area):
        heard = []

        def boom(event):
            raise RuntimeError("listener bug")

        area.subscribe("tab-2", boom)
        area.subscribe("tab-3", heard.append)
        area.set_item("k", "v", source="tab-1")
        assert len(heard) == 1


class TestRegistry:
    def test_one_area_per_origin(self):
        registry = StorageAreaRegistry()
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")
        assert sorted(registry.origins()) == ["a", "b"]

    def test_disk_registry(self, tmp_path):
        registry = StorageAreaRegistry(backend="disk", root_dir=str(tmp_path))
        registry.get("o").set_item("k", "v")
        assert DiskBackend(str(tmp_path), "o").get_item("k") == "v"

    def test_find_does_not_create(self):
        registry = StorageAreaRegistry()
        assert registry.find("a") is None
        assert registry.origins() == []
        area = registry.get("a")
        assert registry.find("a") is area

    def test_find_picks_up_persisted_disk_origin(self, tmp_path):
        DiskBackend(str(tmp_path), "o").set_item("k", "v")
        registry = StorageAreaRegistry(backend="disk", root_dir=str(tmp_path))
        assert registry.find("missing") is None
        assert registry.find("o").get_item("k") == "v"
        assert registry.origins() == ["o"]

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            StorageAreaRegistry(backend="redis")

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PATIENT_CONTEXT_BACKEND", "disk")
        monkeypatch.setenv("PATIENT_CONTEXT_DIR", str(tmp_path))
        monkeypatch.setenv("PATIENT_CONTEXT_QUOTA_BYTES", "1024")
        registry = StorageAreaRegistry.from_env()
        assert registry.backend == "disk"
        assert registry.max_bytes == 1024
