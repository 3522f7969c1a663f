from __future__ import annotations

import pytest
from openpyxl import load_workbook

from conftest import dump_json, write_tree


@pytest.fixture
def manager(make_manager, game_dir, add_mod):
    write_tree(game_dir / "base", {"Data/Config.json": dump_json({"X": 1}), "Sound/Theme.bin": b"quiet"})
    manager = make_manager()
    add_mod(manager, "Loud", {"content/Sound/Theme.bin": b"loud"}, overrides=["content/Sound/*"])
    add_mod(manager, "Louder", {"content/Sound/Theme.bin": b"louder", "content/Data/Config.json": dump_json({"X": 2})})
    add_mod(manager, "Tweaks", {"content/Data/Config.json": dump_json({"X": 3})})
    return manager


def test_override_beats_higher_priority(manager):
    records = {record.path: record for record in manager.conflicts()}

    assert sorted(records) == ["content/Data/Config.json", "content/Sound/Theme.bin"]
    theme = records["content/Sound/Theme.bin"]
    assert theme.override
    assert theme.winner.name == "Loud"
    assert [loser.name for loser in theme.losers] == ["Louder"]
    config = records["content/Data/Config.json"]
    assert not config.override
    assert config.winner.name == "Tweaks"


def test_disabled_mods_are_not_in_conflict(manager):
    manager.set_enabled("Louder", False)

    assert [record.path for record in manager.conflicts()] == []


def test_report_workbook_has_mods_conflicts_and_pending(manager, tmp_path):
    manager.apply()
    path = manager.report(tmp_path / "reports" / "mod_report.xlsx")

    workbook = load_workbook(path)
    assert workbook.sheetnames == ["mods", "conflicts", "pending"]

    mods = list(workbook["mods"].iter_rows(values_only=True))
    assert mods[0][:2] == ("priority", "mod name")
    assert [row[1] for row in mods[1:]] == ["Loud", "Louder", "Tweaks"]
    louder = mods[2]
    assert louder[5] == 2  # shared paths
    assert louder[6] == 1  # overridden paths

    conflicts = list(workbook["conflicts"].iter_rows(values_only=True))
    assert ("content/Sound/Theme.bin", "override", "0:Loud", "1:Louder") in conflicts

    pending = list(workbook["pending"].iter_rows(values_only=True))
    assert ("added", "content/Sound/Theme.bin") in pending
