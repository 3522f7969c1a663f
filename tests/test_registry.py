from __future__ import annotations

import pytest

from modmerger.errors import RegistryError
from modmerger.registry import Registry

from conftest import dump_json, write_tree


@pytest.fixture
def manager(make_manager, game_dir):
    write_tree(game_dir / "base", {"Data/A.json": dump_json({"v": 0}), "Data/B.json": dump_json({"v": 0})})
    return make_manager()


def priorities(manager):
    return [(entry.name, entry.priority) for entry in manager.profile.entries()]


def test_priorities_stay_unique_and_contiguous(manager, add_mod):
    add_mod(manager, "One", {"content/Data/A.json": dump_json({"v": 1})})
    add_mod(manager, "Two", {"content/Data/B.json": dump_json({"v": 2})})
    add_mod(manager, "Three", {"content/Data/A.json": dump_json({"v": 3})})
    assert priorities(manager) == [("One", 0), ("Two", 1), ("Three", 2)]

    manager.reorder("Three", 0)
    assert priorities(manager) == [("Three", 0), ("One", 1), ("Two", 2)]

    manager.uninstall("One")
    assert priorities(manager) == [("Three", 0), ("Two", 1)]


def test_mutations_report_affected_paths(manager, add_mod):
    one = add_mod(manager, "One", {"content/Data/A.json": dump_json({"v": 1})})
    two = add_mod(manager, "Two", {"content/Data/B.json": dump_json({"v": 2})})
    profile = manager.profile

    assert profile.set_enabled(two.mod_id, False) == {"content/Data/B.json"}
    assert profile.set_enabled(two.mod_id, False) == set()
    assert [entry.name for entry in profile.entries(enabled_only=True)] == ["One"]

    assert profile.move(one.mod_id, 1) == {"content/Data/A.json", "content/Data/B.json"}
    assert profile.move(one.mod_id, 1) == set()


def test_profile_is_persisted_and_storage_shared(manager, add_mod, settings):
    entry = add_mod(manager, "One", {"content/Data/A.json": dump_json({"v": 1})})

    registry = Registry(settings.platform_root(), "switch")
    other = registry.profile("Other", create=True)
    other.add(entry.mod_id)

    assert registry.profile_names() == ["Default", "Other"]
    assert [slot.mod_id for slot in registry.profile("Default").slots] == [entry.mod_id]
    assert registry.store.ids() == [entry.mod_id]

    manager.uninstall("One")
    assert entry.mod_id in registry.store

    other.remove(entry.mod_id)
    assert registry.collect_garbage() == [entry.mod_id]
    assert registry.store.ids() == []


def test_adding_twice_or_unknown_profiles_fail(manager, add_mod, settings):
    entry = add_mod(manager, "One", {"content/Data/A.json": dump_json({"v": 1})})

    with pytest.raises(RegistryError):
        manager.profile.add(entry.mod_id)
    with pytest.raises(RegistryError):
        Registry(settings.platform_root(), "switch").profile("Missing")


def test_platform_specific_mod_is_refused_elsewhere(manager, add_mod):
    with pytest.raises(RegistryError):
        add_mod(manager, "WiiU Only", {"content/Data/A.json": dump_json({"v": 1})}, platform="wiiu")


def test_priority_hint_places_the_mod_when_no_priority_is_given(manager, add_mod):
    add_mod(manager, "One", {"content/Data/A.json": dump_json({"v": 1})})
    add_mod(manager, "Two", {"content/Data/B.json": dump_json({"v": 2})})
    add_mod(manager, "Base Fix", {"content/Data/A.json": dump_json({"v": 3})}, priority=0)
    add_mod(manager, "Late", {"content/Data/B.json": dump_json({"v": 4})}, priority=99)

    assert priorities(manager) == [("Base Fix", 0), ("One", 1), ("Two", 2), ("Late", 3)]
