from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List

from .models import ConflictRecord, ModEntry
from .registry import ModStore


def detect_path_conflicts(entries: Iterable[ModEntry], store: ModStore) -> Dict[str, List[ModEntry]]:
    """Group enabled mods by the leaf paths they change; keep paths with more than one mod."""

    grouped: Dict[str, List[ModEntry]] = defaultdict(list)
    for entry in entries:
        if not entry.enabled:
            continue
        for key in store.get(entry.mod_id).keys_for(entry.options):
            grouped[key].append(entry)

    return {key: group for key, group in grouped.items() if len({item.mod_id for item in group}) > 1}


def _is_override(entry: ModEntry, key: str, store: ModStore) -> bool:
    return "override" in store.get(entry.mod_id).contribution_types(key, entry.options)


def _select_winner(key: str, group: List[ModEntry], store: ModStore) -> tuple[ModEntry, List[ModEntry], bool]:
    # Highest priority wins, but an override beats any non-override.
    ordered = sorted(group, key=lambda item: item.priority, reverse=True)
    overrides = [item for item in ordered if _is_override(item, key, store)]
    winner = overrides[0] if overrides else ordered[0]
    losers = [item for item in ordered if item is not winner]
    return winner, losers, bool(overrides)


def build_conflict_records(conflicts: Dict[str, List[ModEntry]], store: ModStore) -> List[ConflictRecord]:
    records: List[ConflictRecord] = []
    for key, group in sorted(conflicts.items()):
        winner, losers, override = _select_winner(key, group, store)
        records.append(
            ConflictRecord(
                path=key,
                entries=list(group),
                winner=winner,
                losers=losers,
                override=override,
            )
        )
    return records


__all__ = ["build_conflict_records", "detect_path_conflicts"]
