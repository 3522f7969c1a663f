"""Merge composer: folds prioritized mod contributions into one resource.

Every resource kind carries its own merge rule (``MERGE_RULES``), a pure
function of the baseline bytes and the contributions in ascending priority
order. Override contributions short-circuit all of them.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple

from .differ import DiffOp, NodePath, OpKind, ResourceDiff, has_identity, keyed_items
from .errors import ContainerError
from .file_utils import atomic_write_bytes, hash_bytes, read_json, write_json
from .formats import (
    DEFAULT_IDENTITY_FIELDS,
    MergeRule,
    ResourceKind,
    format_for_path,
    parse_structured,
    resource_kind,
    serialize_structured,
)
from .localization import DEFAULT_LANGUAGE, pick_language
from .logging_utils import log_debug, log_warn

MISSING = object()

CacheKey = Tuple[Tuple[str, int, str], ...]


class ContributionKind(str, Enum):
    DIFF = "diff"
    REPLACE = "replace"
    OVERRIDE = "override"


@dataclass(slots=True)
class Contribution:
    mod_id: str
    mod_name: str
    priority: int
    version: str
    kind: ContributionKind
    diff: ResourceDiff | None = None
    data: bytes | None = None
    language: str | None = None
    default_language: str = DEFAULT_LANGUAGE

    @property
    def identity(self) -> Tuple[str, int, str]:
        return (self.mod_id, self.priority, self.version)


@dataclass(slots=True)
class MergedResource:
    path: str
    data: bytes
    key: CacheKey
    contributors: List[str] = field(default_factory=list)
    winner: str | None = None

    @property
    def digest(self) -> str:
        return hash_bytes(self.data)


def cache_key(contributions: Sequence[Contribution]) -> CacheKey:
    return tuple(contribution.identity for contribution in contributions)


# --- structured operations -------------------------------------------------


def apply_diff(document: Any, resource_diff: ResourceDiff, rule: MergeRule) -> Any:
    result = copy.deepcopy(document)
    for op in resource_diff.ops:
        result = apply_op(result, op, rule)
    return result


def apply_op(document: Any, op: DiffOp, rule: MergeRule) -> Any:
    """Apply one node operation. Targets that no longer exist are skipped."""

    if not op.path:
        if op.kind is OpKind.REMOVE:
            return None
        return copy.deepcopy(op.value)
    if document is None and op.path[0][0] == "key":
        document = {}

    node, node_key = document, None
    for segment in op.path[:-1]:
        node = _child(node, segment)
        if node is MISSING:
            log_debug(f"Skipping {op.kind.value} at {_describe(op.path)}: parent node is gone")
            return document
        node_key = segment[1] if segment[0] == "key" else None

    _apply_at(node, node_key, op.path[-1], op, rule)
    return document


def _describe(path: NodePath) -> str:
    return "/".join(str(segment[-1] if segment[0] != "id" else f"{segment[1]}={segment[2]}") for segment in path)


def _find_identity(items: list, field_name: str, value: Any, occurrence: int) -> int:
    seen = 0
    for index, item in enumerate(items):
        if has_identity(item, field_name) and type(item[field_name]) is type(value) and item[field_name] == value:
            if seen == occurrence:
                return index
            seen += 1
    return -1


def _child(node: Any, segment: Tuple[Any, ...]) -> Any:
    tag = segment[0]
    if tag == "key":
        if isinstance(node, dict) and segment[1] in node:
            return node[segment[1]]
        return MISSING
    if not isinstance(node, list):
        return MISSING
    if tag == "pos":
        index = segment[1]
        return node[index] if 0 <= index < len(node) else MISSING
    index = _find_identity(node, segment[1], segment[2], segment[3])
    return node[index] if index >= 0 else MISSING


def _apply_at(container: Any, container_key: Any, segment: Tuple[Any, ...], op: DiffOp, rule: MergeRule) -> None:
    tag = segment[0]
    if tag == "key":
        if not isinstance(container, dict):
            log_debug(f"Skipping {op.kind.value} of key {segment[1]!r}: parent is not a mapping")
            return
        key = segment[1]
        if op.kind is OpKind.REMOVE:
            container.pop(key, None)
            return
        current = container.get(key, MISSING)
        if key in rule.record_lists and isinstance(current, list) and isinstance(op.value, list):
            merge_records(current, op.value, rule.record_lists[key], rule)
        else:
            container[key] = copy.deepcopy(op.value)
        return

    if not isinstance(container, list):
        log_debug(f"Skipping {op.kind.value} of list item: parent is not a list")
        return

    if tag == "pos":
        index = segment[1]
        if op.kind is OpKind.REMOVE:
            if 0 <= index < len(container):
                del container[index]
        elif op.kind is OpKind.REPLACE and 0 <= index < len(container):
            container[index] = copy.deepcopy(op.value)
        else:
            container.append(copy.deepcopy(op.value))
        return

    _, field_name, value, occurrence = segment
    index = _find_identity(container, field_name, value, occurrence)
    if op.kind is OpKind.REMOVE:
        if index >= 0:
            del container[index]
        return
    if index < 0:
        container.append(copy.deepcopy(op.value))
    elif _is_record_list(container_key, field_name, rule) and isinstance(container[index], dict) and isinstance(op.value, dict):
        deep_merge(container[index], op.value, rule)
    else:
        container[index] = copy.deepcopy(op.value)


def _is_record_list(container_key: Any, field_name: str, rule: MergeRule) -> bool:
    return isinstance(container_key, str) and rule.record_lists.get(container_key) == field_name


def deep_merge(existing: Dict[Any, Any], incoming: Dict[Any, Any], rule: MergeRule) -> None:
    """Merge ``incoming`` into ``existing`` field by field; incoming wins per field."""

    for key, value in incoming.items():
        current = existing.get(key, MISSING)
        if isinstance(current, dict) and isinstance(value, dict):
            deep_merge(current, value, rule)
        elif key in rule.record_lists and isinstance(current, list) and isinstance(value, list):
            merge_records(current, value, rule.record_lists[key], rule)
        else:
            existing[key] = copy.deepcopy(value)


def merge_records(existing: list, incoming: list, field_name: str, rule: MergeRule) -> None:
    usable = [item for item in incoming if has_identity(item, field_name)]
    for (value, occurrence), item in keyed_items(usable, field_name):
        index = _find_identity(existing, field_name, value, occurrence)
        if index >= 0 and isinstance(existing[index], dict):
            deep_merge(existing[index], item, rule)
        else:
            existing.append(copy.deepcopy(item))
    # Records without a usable identity cannot be paired; keep them.
    existing.extend(copy.deepcopy(item) for item in incoming if not has_identity(item, field_name))


# --- per-kind merge rules --------------------------------------------------


def _merge_structured(
    path: str,
    baseline: bytes | None,
    contributions: Sequence[Contribution],
    rule: MergeRule,
) -> bytes:
    fmt = format_for_path(path)
    document = parse_structured(baseline, fmt, path) if baseline is not None else None
    for contribution in contributions:
        if contribution.kind is ContributionKind.REPLACE and contribution.data is not None:
            document = parse_structured(contribution.data, fmt, f"{path} ({contribution.mod_name})")
        elif contribution.diff is not None:
            document = apply_diff(document, contribution.diff, rule)
    return serialize_structured(document, fmt)


def select_language(contributions: Sequence[Contribution], language: str) -> List[Contribution]:
    """Keep one language per mod: ``language`` if shipped, else the mod's default."""

    by_mod: Dict[str, List[Contribution]] = {}
    for contribution in contributions:
        by_mod.setdefault(contribution.mod_id, []).append(contribution)

    selected: List[Contribution] = []
    for group in by_mod.values():
        chosen = pick_language(
            (item.language for item in group if item.language),
            language,
            group[0].default_language,
        )
        if chosen is None:
            log_debug(f"{group[0].mod_name} has no {language} or {group[0].default_language} text; skipping")
            continue
        selected.extend(item for item in group if item.language == chosen)
    return sorted(selected, key=lambda item: item.priority)


def _merge_opaque(
    path: str,
    baseline: bytes | None,
    contributions: Sequence[Contribution],
    rule: MergeRule,
) -> bytes:
    for contribution in reversed(contributions):
        if contribution.data is not None:
            return contribution.data
    if any(contribution.diff is not None for contribution in contributions):
        log_warn(f"{path}: structural diffs cannot apply to an opaque resource; keeping baseline")
    if baseline is None:
        raise ContainerError(path, "no contribution carries file data")
    return baseline


MERGE_RULES: Dict[ResourceKind, Callable[[str, bytes | None, Sequence[Contribution], MergeRule], bytes]] = {
    ResourceKind.STRUCTURED: _merge_structured,
    ResourceKind.LOCALIZED: _merge_structured,
    ResourceKind.OPAQUE: _merge_opaque,
}


def order_contributions(
    path: str,
    contributions: Sequence[Contribution],
    language: str = DEFAULT_LANGUAGE,
) -> List[Contribution]:
    """The contributions :func:`merge` folds, in application order."""

    ordered = sorted(contributions, key=lambda item: item.priority)
    if resource_kind(path) is ResourceKind.LOCALIZED:
        ordered = select_language(ordered, language)
    return ordered


def merge(
    path: str,
    baseline: bytes | None,
    contributions: Sequence[Contribution],
    rule: MergeRule | None = None,
    language: str = DEFAULT_LANGUAGE,
) -> MergedResource | None:
    """Compose ``contributions`` (any order; sorted here) onto ``baseline``.

    Returns None when nothing contributes to ``path``: the resource retires.
    """

    rule = rule or MergeRule(pattern=path, identity_fields=DEFAULT_IDENTITY_FIELDS)
    ordered = order_contributions(path, contributions, language)
    kind = resource_kind(path)
    if not ordered:
        return None

    key = cache_key(ordered)
    overrides = [item for item in ordered if item.kind is ContributionKind.OVERRIDE]
    if overrides:
        winner = overrides[-1]
        dropped = [item.mod_name for item in ordered if item is not winner]
        if dropped:
            log_debug(f"{path}: override from {winner.mod_name} supersedes {', '.join(dropped)}")
        return MergedResource(
            path=path,
            data=winner.data or b"",
            key=key,
            contributors=[item.mod_name for item in ordered],
            winner=winner.mod_name,
        )

    try:
        data = MERGE_RULES[kind](path, baseline, ordered, rule)
    except ContainerError as exc:
        if kind is ResourceKind.OPAQUE:
            raise
        # A document that does not parse is merged like an opaque file.
        log_warn(f"{exc}; falling back to whole-file merge")
        data = _merge_opaque(path, baseline, ordered, rule)
    return MergedResource(
        path=path,
        data=data,
        key=key,
        contributors=[item.mod_name for item in ordered],
        winner=ordered[-1].mod_name,
    )


# --- cache -----------------------------------------------------------------


class MergeCache:
    """Merged leaves by virtual path, persisted as an index plus a blob store.

    An entry is trusted only while its key (the ordered contributor tuple)
    is unchanged.
    """

    INDEX_NAME = "index.json"

    def __init__(self, root: Path) -> None:
        self.root = root
        self.blob_root = root / "blobs"
        self._entries: Dict[str, Dict[str, Any]] = {}
        raw = read_json(root / self.INDEX_NAME, default={}) or {}
        for path, entry in raw.items():
            entry["key"] = tuple(tuple(item) for item in entry.get("key", ()))
            self._entries[path] = entry

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def paths(self) -> List[str]:
        return sorted(self._entries)

    def _blob_path(self, digest: str) -> Path:
        return self.blob_root / digest[:2] / digest

    def lookup(self, path: str, key: CacheKey) -> MergedResource | None:
        entry = self._entries.get(path)
        if entry is None or tuple(entry["key"]) != tuple(key):
            return None
        blob = self._blob_path(entry["digest"])
        if not blob.exists():
            return None
        return MergedResource(
            path=path,
            data=blob.read_bytes(),
            key=key,
            contributors=list(entry.get("contributors", [])),
            winner=entry.get("winner"),
        )

    def get(self, path: str) -> MergedResource | None:
        entry = self._entries.get(path)
        if entry is None:
            return None
        return self.lookup(path, entry["key"])

    def store(self, resource: MergedResource) -> None:
        digest = resource.digest
        blob = self._blob_path(digest)
        if not blob.exists():
            atomic_write_bytes(blob, resource.data)
        self._entries[resource.path] = {
            "key": resource.key,
            "digest": digest,
            "contributors": list(resource.contributors),
            "winner": resource.winner,
        }

    def invalidate(self, paths: Iterable[str]) -> None:
        for path in paths:
            self._entries.pop(path, None)

    def clear(self) -> None:
        self._entries.clear()

    def save(self) -> None:
        live = {entry["digest"] for entry in self._entries.values()}
        if self.blob_root.exists():
            for blob in self.blob_root.glob("*/*"):
                if blob.name not in live:
                    blob.unlink()
        write_json(self.root / self.INDEX_NAME, {path: dict(entry, key=[list(k) for k in entry["key"]]) for path, entry in self._entries.items()})


__all__ = [
    "Contribution",
    "ContributionKind",
    "MergeCache",
    "MergedResource",
    "apply_diff",
    "apply_op",
    "cache_key",
    "deep_merge",
    "merge",
    "merge_records",
    "order_contributions",
    "select_language",
]
