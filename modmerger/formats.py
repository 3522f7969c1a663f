"""Format hints, structured document I/O and per-path merge rules."""

from __future__ import annotations

import fnmatch
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import yaml

from .errors import ContainerError
from .localization import language_from_path
from .text_utils import canonical_name

FORMAT_BY_SUFFIX = {
    ".json": "json",
    ".yml": "yaml",
    ".yaml": "yaml",
    ".pack": "pack",
}
STRUCTURED_FORMATS = frozenset({"json", "yaml"})
BINARY_FORMAT = "binary"


class ResourceKind(str, Enum):
    STRUCTURED = "structured"
    LOCALIZED = "localized"
    OPAQUE = "opaque"


def format_for_path(path: str) -> str:
    suffix = PurePosixPath(canonical_name(path)).suffix.lower()
    return FORMAT_BY_SUFFIX.get(suffix, BINARY_FORMAT)


def resource_kind(path: str, format_hint: str | None = None) -> ResourceKind:
    fmt = format_hint or format_for_path(path)
    if fmt not in STRUCTURED_FORMATS:
        return ResourceKind.OPAQUE
    if language_from_path(path):
        return ResourceKind.LOCALIZED
    return ResourceKind.STRUCTURED


def parse_structured(data: bytes, format_hint: str, path: str = "") -> Any:
    try:
        text = data.decode("utf-8-sig")
        if format_hint == "yaml":
            return yaml.safe_load(text)
        return json.loads(text)
    except (UnicodeDecodeError, ValueError, yaml.YAMLError) as exc:
        raise ContainerError(path, f"invalid {format_hint} document: {exc}") from exc


def serialize_structured(document: Any, format_hint: str) -> bytes:
    if format_hint == "yaml":
        text = yaml.safe_dump(document, default_flow_style=False, allow_unicode=True, sort_keys=False)
        return text.encode("utf-8")
    return (json.dumps(document, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


@dataclass(slots=True)
class MergeRule:
    """How structured documents matching ``pattern`` are diffed and merged.

    ``identity_fields`` are tried in order to pair list items. Lists stored
    under a key named in ``record_lists`` are deep-mergeable: records are
    paired by the mapped identity field and merged field by field instead of
    being replaced wholesale.
    """

    pattern: str
    identity_fields: Tuple[str, ...] = ()
    record_lists: Dict[str, str] = field(default_factory=dict)

    def matches(self, path: str) -> bool:
        return fnmatch.fnmatchcase(canonical_name(path), self.pattern)


DEFAULT_IDENTITY_FIELDS = ("id", "Id", "ID", "name", "Name", "HashValue")

DEFAULT_RULES: List[MergeRule] = [
    MergeRule("GameData/*", record_lists={"bool_data": "HashValue", "s32_data": "HashValue", "f32_data": "HashValue"}),
    MergeRule("Ecosystem/AreaData.*", record_lists={"areas": "AreaNumber"}),
    MergeRule("Actor/AttClientList/*", record_lists={"AttClients": "Name"}),
    MergeRule("Map/*/Static.*", record_lists={"StartPos": "PosName"}),
    MergeRule("Message/*", record_lists={"entries": "label"}),
]


class RuleSet:
    def __init__(self, rules: Iterable[MergeRule] | None = None) -> None:
        self.rules: List[MergeRule] = list(rules) if rules is not None else list(DEFAULT_RULES)

    def extend(self, rules: Iterable[MergeRule]) -> None:
        # Rules loaded from configuration take precedence over built-ins.
        self.rules[:0] = list(rules)

    def rule_for(self, path: str) -> MergeRule:
        identity: List[str] = []
        record_lists: Dict[str, str] = {}
        for rule in self.rules:
            if not rule.matches(path):
                continue
            identity.extend(name for name in rule.identity_fields if name not in identity)
            for key, ident in rule.record_lists.items():
                record_lists.setdefault(key, ident)
        identity.extend(name for name in DEFAULT_IDENTITY_FIELDS if name not in identity)
        return MergeRule(pattern=path, identity_fields=tuple(identity), record_lists=record_lists)


def rules_from_config(entries: Sequence[Dict[str, Any]]) -> List[MergeRule]:
    rules: List[MergeRule] = []
    for entry in entries:
        pattern = entry.get("pattern")
        if not pattern:
            raise ValueError("merge rule is missing 'pattern'")
        rules.append(
            MergeRule(
                pattern=str(pattern),
                identity_fields=tuple(str(name) for name in entry.get("identity_fields", ())),
                record_lists={str(k): str(v) for k, v in dict(entry.get("record_lists", {})).items()},
            )
        )
    return rules
