"""Node-level diffs between a baseline document and a modified copy."""

from __future__ import annotations

import copy
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence, Tuple

from .errors import SchemaVersionError
from .formats import DEFAULT_IDENTITY_FIELDS, MergeRule

DIFF_VERSION = 1

# Node path segments:
#   ("key", name)                        mapping key
#   ("id", field, value, occurrence)     list item paired by identity field
#   ("pos", index)                       list item paired by position
Segment = Tuple[Any, ...]
NodePath = Tuple[Segment, ...]

SCALAR_IDENTITY_TYPES = (str, int, float, bool)


class OpKind(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"


@dataclass(slots=True)
class DiffOp:
    kind: OpKind
    path: NodePath
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"op": self.kind.value, "path": [list(seg) for seg in self.path]}
        if self.kind is not OpKind.REMOVE:
            data["value"] = self.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiffOp":
        return cls(
            kind=OpKind(data["op"]),
            path=tuple(tuple(seg) for seg in data["path"]),
            value=data.get("value"),
        )


@dataclass(slots=True)
class ResourceDiff:
    ops: List[DiffOp] = field(default_factory=list)
    version: int = DIFF_VERSION

    def __bool__(self) -> bool:
        return bool(self.ops)

    def __len__(self) -> int:
        return len(self.ops)

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "ops": [op.to_dict() for op in self.ops]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str = "") -> "ResourceDiff":
        version = int(data.get("version", DIFF_VERSION))
        if version > DIFF_VERSION:
            raise SchemaVersionError(path, version, DIFF_VERSION)
        return cls(ops=[DiffOp.from_dict(op) for op in data.get("ops", [])], version=version)


def has_identity(item: Any, field_name: str) -> bool:
    if not isinstance(item, dict) or field_name not in item:
        return False
    value = item[field_name]
    return value is not None and isinstance(value, SCALAR_IDENTITY_TYPES)


def pick_identity_field(items: Sequence[Any], parent_key: Any, rule: MergeRule) -> str | None:
    """Return the field that pairs list items, or None for positional pairing.

    A field declared for this list wins; otherwise the first candidate that
    every item carries as a scalar. Items without a usable value make the
    whole list positional.
    """

    if not items:
        return None
    declared = rule.record_lists.get(parent_key) if isinstance(parent_key, str) else None
    candidates = (declared, *rule.identity_fields) if declared else rule.identity_fields
    for field_name in candidates:
        if all(has_identity(item, field_name) for item in items):
            return field_name
    return None


def keyed_items(items: Sequence[Any], field_name: str) -> List[Tuple[Tuple[Any, int], Any]]:
    """Pair each item with ``(identity value, occurrence)``.

    Repeated identity values are told apart by how many times the value has
    been seen before, so duplicates pair up in order instead of colliding.
    """

    seen: Counter = Counter()
    keyed = []
    for item in items:
        value = item[field_name]
        marker = (type(value).__name__, value)
        keyed.append(((value, seen[marker]), item))
        seen[marker] += 1
    return keyed


def identity_key(ident: Tuple[Any, int]) -> Tuple[str, Any, int]:
    """Hashable form of ``(value, occurrence)`` that keeps ``1``, ``1.0`` and ``True`` apart."""

    value, occurrence = ident
    return (type(value).__name__, value, occurrence)


def diff(baseline: Any, modified: Any, rule: MergeRule | None = None) -> ResourceDiff:
    rule = rule or MergeRule(pattern="*", identity_fields=DEFAULT_IDENTITY_FIELDS)
    ops: List[DiffOp] = []
    _diff_node(baseline, modified, (), None, rule, ops)
    return ResourceDiff(ops=ops)


def _same(left: Any, right: Any) -> bool:
    return type(left) is type(right) and left == right


def _diff_node(base: Any, mod: Any, path: NodePath, parent_key: Any, rule: MergeRule, ops: List[DiffOp]) -> None:
    if isinstance(base, dict) and isinstance(mod, dict):
        for key in base:
            if key not in mod:
                ops.append(DiffOp(OpKind.REMOVE, path + (("key", key),)))
        for key, value in mod.items():
            child = path + (("key", key),)
            if key not in base:
                ops.append(DiffOp(OpKind.ADD, child, copy.deepcopy(value)))
            else:
                _diff_node(base[key], value, child, key, rule, ops)
        return
    if isinstance(base, list) and isinstance(mod, list):
        _diff_list(base, mod, path, parent_key, rule, ops)
        return
    if not _same(base, mod):
        ops.append(DiffOp(OpKind.REPLACE, path, copy.deepcopy(mod)))


def _diff_list(base: list, mod: list, path: NodePath, parent_key: Any, rule: MergeRule, ops: List[DiffOp]) -> None:
    field_name = pick_identity_field([*base, *mod], parent_key, rule)
    if field_name is None:
        _diff_positional(base, mod, path, parent_key, rule, ops)
        return

    base_keyed = keyed_items(base, field_name)
    base_items = {identity_key(ident): item for ident, item in base_keyed}
    mod_items = keyed_items(mod, field_name)
    mod_keys = {identity_key(ident) for ident, _ in mod_items}
    for ident, _ in base_keyed:
        if identity_key(ident) not in mod_keys:
            ops.append(DiffOp(OpKind.REMOVE, path + (("id", field_name, *ident),)))
    for ident, item in mod_items:
        child = path + (("id", field_name, *ident),)
        key = identity_key(ident)
        if key not in base_items:
            ops.append(DiffOp(OpKind.ADD, child, copy.deepcopy(item)))
        else:
            _diff_node(base_items[key], item, child, None, rule, ops)


def _diff_positional(base: list, mod: list, path: NodePath, parent_key: Any, rule: MergeRule, ops: List[DiffOp]) -> None:
    shared = min(len(base), len(mod))
    for index in range(shared):
        _diff_node(base[index], mod[index], path + (("pos", index),), None, rule, ops)
    for index in range(shared, len(mod)):
        ops.append(DiffOp(OpKind.ADD, path + (("pos", index),), copy.deepcopy(mod[index])))
    # Highest index first so earlier removals do not shift later ones.
    for index in reversed(range(shared, len(base))):
        ops.append(DiffOp(OpKind.REMOVE, path + (("pos", index),)))


__all__ = [
    "DIFF_VERSION",
    "DiffOp",
    "NodePath",
    "OpKind",
    "ResourceDiff",
    "Segment",
    "diff",
    "has_identity",
    "identity_key",
    "keyed_items",
    "pick_identity_field",
]
