from __future__ import annotations

import json

import pytest

from modmerger.batch import CancelToken
from modmerger.codec import build_pack, decompose
from modmerger.models import ResourceState
from modmerger.sizetable import SIZE_TABLE_PATH

from conftest import dump_json, write_tree

AREA = "content/Pack/Bootup.pack//Ecosystem/AreaData.json"


@pytest.fixture
def manager(make_manager, game_dir):
    write_tree(
        game_dir / "base",
        {
            "Data/Config.json": dump_json({"X": 1}),
            "Pack/Bootup.pack": build_pack(
                [
                    ("Ecosystem/AreaData.json", dump_json({"areas": [{"AreaNumber": 1, "Temp": 20, "Rain": 0}]})),
                    ("Other.bin", b"\x00" * 7),
                ]
            ),
            "System/Resource/ResourceSizeTable.json": dump_json({"Data/Config.json": 16}),
        },
    )
    write_tree(game_dir / "update", {"Data/Config.json": dump_json({"X": 1, "Patched": True})})
    return make_manager()


def bootup_pack(temp=20, rain=0):
    return build_pack(
        [
            ("Ecosystem/AreaData.json", dump_json({"areas": [{"AreaNumber": 1, "Temp": temp, "Rain": rain}]})),
            ("Other.bin", b"\x00" * 7),
        ]
    )


def merged_json(manager, key):
    return json.loads(manager.tracker.merged_path(key).read_bytes())


def test_two_mods_merge_into_one_file(manager, add_mod):
    add_mod(manager, "A", {"content/Data/Config.json": dump_json({"X": 2, "Patched": True})})
    add_mod(manager, "B", {"content/Data/Config.json": dump_json({"X": 1, "Patched": True, "Y": 5})})

    result = manager.apply()

    assert result.ok
    assert merged_json(manager, "content/Data/Config.json") == {"X": 2, "Patched": True, "Y": 5}
    assert manager.pending().added == {"content/Data/Config.json", SIZE_TABLE_PATH}


def test_nested_leaves_merge_inside_their_container(manager, add_mod):
    add_mod(manager, "Hot", {"content/Pack/Bootup.pack": bootup_pack(temp=35)})
    add_mod(manager, "Wet", {"content/Pack/Bootup.pack": bootup_pack(rain=5)})

    manager.apply()

    parts = decompose(manager.tracker.merged_path("content/Pack/Bootup.pack").read_bytes(), path="content/Pack/Bootup.pack")
    assert json.loads(parts.get(AREA)) == {"areas": [{"AreaNumber": 1, "Temp": 35, "Rain": 5}]}
    assert parts.get("content/Pack/Bootup.pack//Other.bin") == b"\x00" * 7
    assert manager.tracker.state(AREA) is ResourceState.MERGED


def test_second_apply_without_changes_is_a_no_op(manager, add_mod):
    add_mod(manager, "A", {"content/Data/Config.json": dump_json({"X": 2, "Patched": True})})
    manager.apply()
    before = manager.tracker.manifest()

    again = manager.apply()

    assert again.results == {}
    assert manager.tracker.manifest() == before


def test_stale_paths_are_served_from_cache_when_inputs_are_unchanged(manager, add_mod):
    add_mod(manager, "A", {"content/Data/Config.json": dump_json({"X": 2, "Patched": True})})
    manager.apply()
    digest = manager.tracker.manifest()["content/Data/Config.json"]

    manager.tracker.mark_stale(["content/Data/Config.json"])
    assert manager.tracker.state("content/Data/Config.json") is ResourceState.STALE
    result = manager.apply()

    assert result.results["content/Data/Config.json"].cache_hits == 1
    assert manager.tracker.manifest()["content/Data/Config.json"] == digest

    refreshed = manager.apply(refresh=True)
    assert refreshed.results["content/Data/Config.json"].cache_hits == 0
    assert manager.tracker.manifest()["content/Data/Config.json"] == digest


def test_reordering_changes_the_winner(manager, add_mod):
    add_mod(manager, "A", {"content/Data/Config.json": dump_json({"X": 2, "Patched": True})})
    add_mod(manager, "B", {"content/Data/Config.json": dump_json({"X": 3, "Patched": True})})
    manager.apply()
    assert merged_json(manager, "content/Data/Config.json")["X"] == 3

    manager.reorder("B", 0)
    manager.apply()
    assert merged_json(manager, "content/Data/Config.json")["X"] == 2


def test_disabled_mods_contribute_nothing(manager, add_mod):
    add_mod(manager, "A", {"content/Data/Config.json": dump_json({"X": 2, "Patched": True})})
    add_mod(manager, "B", {"content/Data/Extra.bin": b"extra"})
    manager.apply()

    manager.set_enabled("B", False)
    manager.apply()

    assert "content/Data/Extra.bin" not in manager.tracker.manifest()
    assert not manager.tracker.merged_path("content/Data/Extra.bin").exists()


def test_grown_resources_get_size_table_entries(manager, add_mod):
    add_mod(manager, "A", {"content/Data/Config.json": dump_json({"X": 2, "Patched": True})})
    manager.apply()

    table = json.loads(manager.tracker.merged_path(SIZE_TABLE_PATH).read_bytes())
    assert table["Data/Config.json"] > 16


def test_uninstalling_the_only_contributor_retires_the_path(manager, add_mod):
    add_mod(manager, "A", {"content/Data/Config.json": dump_json({"X": 2, "Patched": True})})
    add_mod(manager, "Solo", {"content/Data/Extra.bin": b"extra"})
    manager.apply()
    manager.deploy()
    assert manager.tracker.state("content/Data/Extra.bin") is ResourceState.DEPLOYED

    manager.uninstall("Solo")
    manager.apply()

    assert manager.tracker.state("content/Data/Extra.bin") is ResourceState.RETIRED
    pending = manager.pending()
    assert pending.removed == {"content/Data/Extra.bin"}
    # The retired entry also leaves the size table.
    assert pending.modified == {SIZE_TABLE_PATH}
    assert not pending.added


def test_cancelled_batch_leaves_paths_stale(manager, add_mod):
    add_mod(manager, "A", {"content/Data/Config.json": dump_json({"X": 2, "Patched": True})})
    token = CancelToken()
    token.cancel()

    result = manager.apply(cancel=token)

    assert result.cancelled
    assert result.skipped == ["content/Data/Config.json"]
    assert "content/Data/Config.json" not in manager.tracker.manifest()
    assert manager.tracker.state("content/Data/Config.json") is ResourceState.STALE


def test_changing_language_retires_text_merged_for_the_old_one(manager, make_manager, add_mod):
    text = {"entries": [{"label": "greeting", "text": "Hello"}]}
    add_mod(manager, "Text", {"content/Pack/Msg_USen.json": dump_json(text)})
    manager.apply()
    assert "content/Pack/Msg_USen.json" in manager.tracker.manifest()

    german = make_manager(language="EUde")
    german.apply()

    manifest = german.tracker.manifest()
    assert "content/Pack/Msg_EUde.json" in manifest
    assert "content/Pack/Msg_USen.json" not in manifest
    assert not german.tracker.merged_path("content/Pack/Msg_USen.json").exists()
    assert german.tracker.state("content/Pack/Msg_USen.json") is ResourceState.RETIRED
    assert merged_json(german, "content/Pack/Msg_EUde.json") == text
