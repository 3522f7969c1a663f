from __future__ import annotations

import json

from modmerger.codec import build_pack, compress
from modmerger.sizetable import SizeTable, estimate_size, heuristic_size, load_baseline_table


def test_structured_estimate_is_aligned():
    size = estimate_size("content/Data/Config.json", b"x" * 100)
    assert size == 0x4E0  # 100 * 2 + 0x400 = 0x4C8, rounded up to 32
    assert size % 32 == 0


def test_compressed_pack_is_estimated_from_its_payload():
    pack = build_pack([("a.json", b"{}" * 50)])
    assert estimate_size("content/Pack/Title.pack", compress(pack)) == estimate_size("content/Pack/Title.pack", pack)


def test_estimator_failure_falls_back_to_heuristic():
    broken = b"PACK\x01"
    assert estimate_size("content/Pack/Broken.pack", broken) == heuristic_size(broken) == 32


def test_entries_follow_growth_beyond_the_baseline():
    table = SizeTable({"Data/Config.json": 4096, "Data/Small.json": 64})

    assert not table.update("content/Data/Config.json", b"{}")
    assert "Data/Config.json" not in table

    assert table.update("content/Data/Small.json", b"x" * 200)
    assert table.required("Data/Small.json") == estimate_size("content/Data/Small.json", b"x" * 200)

    assert table.update("content/Pack/Bootup.pack//Actor/New.json", b"{}")
    assert "Actor/New.json" in table

    assert table.retire("content/Pack/Bootup.pack//Actor/New.json")
    assert "Actor/New.json" not in table
    assert not table.retire("content/Pack/Bootup.pack//Actor/New.json")


def test_shrinking_back_below_the_baseline_drops_the_entry():
    table = SizeTable({"Data/Small.json": 64})
    table.update("content/Data/Small.json", b"x" * 200)

    assert table.update("content/Data/Small.json", b"")  # 0x400 still exceeds 64
    table.baseline["Data/Small.json"] = 1 << 20
    assert table.update("content/Data/Small.json", b"")
    assert len(table) == 0


def test_table_file_merges_baseline_and_entries(tmp_path):
    baseline = load_baseline_table(json.dumps({"A.json": 32, "B.json": 64}).encode())
    table = SizeTable(baseline)
    table.update("content/B.json", b"y" * 1000)
    table.save(tmp_path / "sizetable.json")

    restored = SizeTable.load(baseline, tmp_path / "sizetable.json")
    written = json.loads(restored.to_bytes())

    assert written["A.json"] == 32
    assert written["B.json"] == estimate_size("content/B.json", b"y" * 1000)


def test_unreadable_baseline_table_is_empty():
    assert load_baseline_table(b"not json") == {}
    assert load_baseline_table(None) == {}
