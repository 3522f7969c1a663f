from __future__ import annotations

import json

from modmerger.composer import (
    Contribution,
    ContributionKind,
    MergeCache,
    cache_key,
    merge,
    select_language,
)
from modmerger.differ import diff
from modmerger.formats import DEFAULT_IDENTITY_FIELDS, MergeRule

from conftest import dump_json

PATH = "content/Data/Config.json"
RECORDS = MergeRule(pattern="*", identity_fields=DEFAULT_IDENTITY_FIELDS, record_lists={"items": "id"})


def diff_contribution(mod: str, priority: int, before, after, rule=None, **extra) -> Contribution:
    return Contribution(
        mod_id=mod,
        mod_name=mod,
        priority=priority,
        version="v1",
        kind=ContributionKind.DIFF,
        diff=diff(before, after, rule),
        **extra,
    )


def data_contribution(mod: str, priority: int, data: bytes, kind=ContributionKind.REPLACE) -> Contribution:
    return Contribution(mod_id=mod, mod_name=mod, priority=priority, version="v1", kind=kind, data=data)


def merged_document(path, baseline, contributions, rule=None):
    result = merge(path, dump_json(baseline) if baseline is not None else None, contributions, rule)
    return json.loads(result.data)


def test_disjoint_fields_from_two_mods_both_survive():
    base = {"X": 1}
    mod_a = diff_contribution("A", 0, base, {"X": 2})
    mod_b = diff_contribution("B", 1, base, {"X": 1, "Y": 5})

    assert merged_document(PATH, base, [mod_b, mod_a]) == {"X": 2, "Y": 5}


def test_record_list_items_merge_field_by_field():
    base = {"items": []}
    mod_a = diff_contribution("A", 0, base, {"items": [{"id": 7, "name": "foo"}]}, RECORDS)
    mod_b = diff_contribution("B", 1, base, {"items": [{"id": 7, "desc": "bar"}]}, RECORDS)

    forward = merged_document(PATH, base, [mod_a, mod_b], RECORDS)
    mod_a.priority, mod_b.priority = 1, 0
    backward = merged_document(PATH, base, [mod_a, mod_b], RECORDS)

    assert forward == {"items": [{"id": 7, "name": "foo", "desc": "bar"}]}
    assert backward["items"][0] == {"id": 7, "desc": "bar", "name": "foo"}


def test_same_field_in_a_record_goes_to_the_higher_priority():
    base = {"items": [{"id": 1, "hp": 10}]}
    mod_a = diff_contribution("A", 0, base, {"items": [{"id": 1, "hp": 20}]}, RECORDS)
    mod_b = diff_contribution("B", 1, base, {"items": [{"id": 1, "hp": 30}]}, RECORDS)

    assert merged_document(PATH, base, [mod_a, mod_b], RECORDS) == {"items": [{"id": 1, "hp": 30}]}


def test_conflicting_scalar_depends_on_order():
    base = {"X": 1}
    low = diff_contribution("A", 0, base, {"X": 2})
    high = diff_contribution("B", 1, base, {"X": 3})

    assert merged_document(PATH, base, [low, high]) == {"X": 3}
    low.priority, high.priority = 1, 0
    assert merged_document(PATH, base, [low, high]) == {"X": 2}


def test_opaque_resource_takes_the_top_contribution_verbatim():
    path = "content/Model/Link.bin"
    result = merge(path, b"base", [data_contribution("A", 0, b"aaaa"), data_contribution("B", 1, b"bbbb")])

    assert result.data == b"bbbb"
    assert result.winner == "B"
    assert result.contributors == ["A", "B"]


def test_override_suppresses_everything_else():
    base = {"X": 1, "Y": 1}
    below = diff_contribution("A", 0, base, {"X": 2, "Y": 1})
    override = data_contribution("B", 1, b'{"raw": true}', ContributionKind.OVERRIDE)
    above = diff_contribution("C", 2, base, {"X": 1, "Y": 9})

    result = merge(PATH, dump_json(base), [below, override, above])

    assert result.data == b'{"raw": true}'
    assert result.winner == "B"


def test_whole_file_replace_is_the_new_base_for_later_diffs():
    base = {"X": 1}
    replace = data_contribution("A", 0, dump_json({"X": 5, "Z": 0}))
    later = diff_contribution("B", 1, base, {"X": 1, "Y": 2})

    assert merged_document(PATH, base, [replace, later]) == {"X": 5, "Z": 0, "Y": 2}


def test_unparseable_baseline_falls_back_to_whole_file_merge():
    result = merge(PATH, b"{not json", [data_contribution("A", 0, b'{"ok": 1}')])
    assert result.data == b'{"ok": 1}'


def test_nothing_to_merge_retires_the_path():
    assert merge(PATH, b"{}", []) is None


def test_localized_text_uses_one_language_per_mod():
    path = "content/Mals/Msg_JPja.pack//Text.json"
    base = {"entries": []}

    def text(mod, priority, language, label, default="USen"):
        return diff_contribution(
            mod,
            priority,
            base,
            {"entries": [{"label": label, "text": language}]},
            language=language,
            default_language=default,
        )

    both = [text("A", 0, "USen", "a"), text("A", 0, "JPja", "a")]
    fallback = [text("B", 1, "EUde", "b", default="EUde")]
    missing = [text("C", 2, "EUfr", "c")]

    chosen = select_language([*both, *fallback, *missing], "JPja")
    assert [(item.mod_id, item.language) for item in chosen] == [("A", "JPja"), ("B", "EUde")]

    document = json.loads(merge(path, dump_json(base), [*both, *fallback, *missing], language="JPja").data)
    assert document["entries"] == [{"label": "a", "text": "JPja"}, {"label": "b", "text": "EUde"}]


def test_cache_hits_only_for_the_same_contributors(tmp_path):
    base = {"X": 1}
    mod_a = diff_contribution("A", 0, base, {"X": 2})
    result = merge(PATH, dump_json(base), [mod_a])

    cache = MergeCache(tmp_path / "cache")
    cache.store(result)
    cache.save()

    reloaded = MergeCache(tmp_path / "cache")
    hit = reloaded.lookup(PATH, cache_key([mod_a]))
    assert hit is not None
    assert hit.data == result.data

    mod_a.priority = 3
    assert reloaded.lookup(PATH, cache_key([mod_a])) is None

    reloaded.invalidate([PATH])
    reloaded.save()
    assert list((tmp_path / "cache" / "blobs").glob("*/*")) == []


def test_higher_priority_override_beats_a_lower_one():
    base = {"X": 1}
    low = data_contribution("A", 0, b'{"from": "A"}', ContributionKind.OVERRIDE)
    middle = diff_contribution("B", 1, base, {"X": 2})
    high = data_contribution("C", 2, b'{"from": "C"}', ContributionKind.OVERRIDE)

    result = merge(PATH, dump_json(base), [high, middle, low])

    assert result.data == b'{"from": "C"}'
    assert result.winner == "C"
