"""Tests for the path-keyed JSON store."""

from __future__ import annotations

import json

import pytest

from blueberry.core.events import EventBus
from blueberry.storage import JsonStore, StorageEvent

pytestmark = pytest.mark.unit


@pytest.fixture
def path(tmp_path):
    return tmp_path / "data" / "json-storage.json"


class TestGetSet:
    async def test_missing_path_returns_default(self, path):
        store = JsonStore(path)
        assert await store.get("irrigation/valves") is None
        assert await store.get("irrigation/valves", []) == []

    async def test_set_creates_intermediate_objects(self, path):
        store = JsonStore(path)
        await store.set("irrigation/triggers/forecast-updates", True)

        assert await store.get("irrigation/triggers/forecast-updates") is True
        assert await store.get("irrigation") == {"triggers": {"forecast-updates": True}}

    async def test_values_are_copies(self, path):
        store = JsonStore(path)
        value = [{"entityId": "switch.a"}]
        await store.set("irrigation/valves", value)

        value[0]["entityId"] = "mutated"
        fetched = await store.get("irrigation/valves")
        fetched.append({"entityId": "switch.b"})

        assert await store.get("irrigation/valves") == [{"entityId": "switch.a"}]

    async def test_set_replaces_scalar_parent(self, path):
        store = JsonStore(path)
        await store.set("a", 1)
        await store.set("a/b", 2)
        assert await store.get("a") == {"b": 2}

    async def test_invalid_path(self, path):
        store = JsonStore(path)
        with pytest.raises(ValueError):
            await store.set("//", 1)


class TestPersistence:
    async def test_written_to_disk(self, path):
        store = JsonStore(path)
        await store.set("global-connection/access-token", "abc")

        assert json.loads(path.read_text()) == {"global-connection": {"access-token": "abc"}}

    async def test_reloaded_by_new_instance(self, path):
        await JsonStore(path).set("global-connection/client-name", "Smart Blueberry (x)")

        assert await JsonStore(path).get("global-connection/client-name") == "Smart Blueberry (x)"

    async def test_corrupt_file_starts_empty(self, path):
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        store = JsonStore(path)

        assert await store.get("anything") is None

    async def test_no_temp_files_left_behind(self, path):
        store = JsonStore(path)
        await store.set("a", 1)
        await store.set("b", 2)

        assert [p.name for p in path.parent.iterdir()] == ["json-storage.json"]


class TestDelete:
    async def test_delete_removes_path(self, path):
        store = JsonStore(path)
        await store.set("global-connection/access-token", "abc")
        await store.set("global-connection/client-name", "x")

        await store.delete("global-connection/access-token")

        assert await store.get("global-connection") == {"client-name": "x"}

    async def test_delete_missing_path_is_ignored(self, path):
        store = JsonStore(path)
        await store.delete("nothing/here")
        assert not path.exists()


class TestChangedEvent:
    async def test_set_and_delete_emit_path(self, path):
        bus = EventBus()
        changed = []
        bus.on(StorageEvent.CHANGED, changed.append)
        store = JsonStore(path, bus)

        await store.set("irrigation/valves", [])
        await store.delete("irrigation/valves")
        await store.delete("irrigation/valves")

        assert changed == ["irrigation/valves", "irrigation/valves"]
        await bus.close()
