from __future__ import annotations

from itertools import combinations
from pathlib import Path
from typing import Any, Dict, List, Sequence

from openpyxl import Workbook

from .logging_utils import log_conflict, log_ok
from .models import ConflictRecord, ModEntry, PendingChangeSet


def print_conflict_details(conflicts: Sequence[ConflictRecord]) -> None:
    if not conflicts:
        log_ok("No mods change the same paths.")
        return
    log_conflict("Paths changed by more than one mod:")
    for conflict in conflicts:
        details = "; ".join(entry.source_label for entry in sorted(conflict.entries, key=lambda item: item.priority))
        outcome = f"override by {conflict.winner.name}" if conflict.override else f"top: {conflict.winner.name}"
        log_conflict(f"{conflict.path}: {details} ({outcome})", indent=2)


def _build_conflict_rows(conflicts: Sequence[ConflictRecord]) -> List[List[str]]:
    rows: List[List[str]] = []
    for conflict in conflicts:
        rows.append(
            [
                conflict.path,
                "override" if conflict.override else "merge",
                conflict.winner.source_label,
                ", ".join(loser.source_label for loser in conflict.losers),
            ]
        )
    return rows


def _build_mod_rows(entries: Sequence[ModEntry], conflicts: Sequence[ConflictRecord]) -> List[List[Any]]:
    partners: Dict[str, set[str]] = {}
    conflict_paths: Dict[str, int] = {}
    overridden: Dict[str, int] = {}
    for conflict in conflicts:
        involved = conflict.involved_mods()
        for mod_a, mod_b in combinations(involved, 2):
            partners.setdefault(mod_a, set()).add(mod_b)
            partners.setdefault(mod_b, set()).add(mod_a)
        for mod in involved:
            conflict_paths[mod] = conflict_paths.get(mod, 0) + 1
        if conflict.override:
            for loser in conflict.losers:
                overridden[loser.name] = overridden.get(loser.name, 0) + 1

    rows: List[List[Any]] = []
    for entry in entries:
        rows.append(
            [
                entry.priority,  # priority
                entry.name,  # mod name
                entry.meta.version,  # version
                "yes" if entry.enabled else "no",  # enabled
                len(entry.manifest.keys()),  # changed paths
                conflict_paths.get(entry.name, 0),  # shared paths
                overridden.get(entry.name, 0),  # overridden paths
                ", ".join(sorted(partners.get(entry.name, []))),  # conflict partners
                ", ".join(entry.options),  # options
                entry.mod_id,  # id
            ]
        )
    return sorted(rows, key=lambda r: (r[0], r[1]))  # Sort by priority, then name


def export_report(
    output_path: Path,
    entries: Sequence[ModEntry],
    conflicts: Sequence[ConflictRecord],
    pending: PendingChangeSet | None = None,
) -> None:
    """Write an Excel report of the profile's mods, shared paths and pending changes."""

    output_path.parent.mkdir(parents=True, exist_ok=True)

    workbook = Workbook()

    # Mods sheet
    mods_sheet = workbook.active
    if not mods_sheet:
        mods_sheet = workbook.create_sheet("mods")
    else:
        mods_sheet.title = "mods"
    mods_sheet.append(
        [
            "priority",
            "mod name",
            "version",
            "enabled",
            "changed paths",
            "shared paths",
            "overridden paths",
            "conflict partners",
            "options",
            "id",
        ]
    )
    for row in _build_mod_rows(entries, conflicts):
        mods_sheet.append(row)

    # Conflicts sheet
    conflicts_sheet = workbook.create_sheet("conflicts")
    conflicts_sheet.append(["path", "resolution", "top source", "lower sources"])
    for row in _build_conflict_rows(conflicts):
        conflicts_sheet.append(row)

    # Pending changes sheet
    pending_sheet = workbook.create_sheet("pending")
    pending_sheet.append(["change", "path"])
    if pending is not None:
        for change, paths in (("added", pending.added), ("modified", pending.modified), ("removed", pending.removed)):
            for path in sorted(paths):
                pending_sheet.append([change, path])

    workbook.save(output_path)
    workbook.close()


__all__ = ["print_conflict_details", "export_report"]
