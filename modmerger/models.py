from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence, Set

from .localization import DEFAULT_LANGUAGE
from .text_utils import normalize_name, normalize_path


class Variant(str, Enum):
    CONTENT = "content"
    AOC = "aoc"

    def key(self, path: str) -> str:
        return f"{self.value}/{normalize_path(path)}"


def split_variant_key(key: str) -> tuple[Variant, str]:
    head, _, rest = key.partition("/")
    return Variant(head), rest


class DeployMethod(str, Enum):
    COPY = "copy"
    HARDLINK = "hardlink"
    SYMLINK = "symlink"


class DeployLayout(str, Enum):
    WITH_NAME = "with_name"
    WITHOUT_NAME = "without_name"


class ResourceState(str, Enum):
    UNTOUCHED = "untouched"
    DIFFED = "diffed"
    MERGED = "merged"
    STALE = "stale"
    DEPLOYED = "deployed"
    RETIRED = "retired"


class OptionGroupType(str, Enum):
    EXCLUSIVE = "exclusive"
    MULTIPLE = "multiple"


@dataclass(slots=True)
class ModOption:
    name: str
    path: str
    description: str = ""
    requires: List[str] = field(default_factory=list)


@dataclass(slots=True)
class OptionGroup:
    name: str
    group_type: OptionGroupType
    options: List[ModOption] = field(default_factory=list)
    description: str = ""
    required: bool = False
    defaults: List[str] = field(default_factory=list)

    @property
    def option_paths(self) -> List[str]:
        return [option.path for option in self.options]


@dataclass(slots=True)
class Manifest:
    """Leaf paths a mod touches, partitioned by variant."""

    content: Set[str] = field(default_factory=set)
    aoc: Set[str] = field(default_factory=set)

    def keys(self) -> Set[str]:
        return {Variant.CONTENT.key(path) for path in self.content} | {
            Variant.AOC.key(path) for path in self.aoc
        }

    def add(self, variant: Variant, path: str) -> None:
        getattr(self, variant.value).add(normalize_path(path))

    def extend(self, other: "Manifest") -> None:
        self.content |= other.content
        self.aoc |= other.aoc

    def is_empty(self) -> bool:
        return not self.content and not self.aoc

    def to_dict(self) -> Dict[str, List[str]]:
        return {"content": sorted(self.content), "aoc": sorted(self.aoc)}

    @classmethod
    def from_dict(cls, data: Dict[str, Iterable[str]] | None) -> "Manifest":
        data = data or {}
        return cls(
            content={normalize_path(path) for path in data.get("content", [])},
            aoc={normalize_path(path) for path in data.get("aoc", [])},
        )


@dataclass(slots=True)
class ModMeta:
    name: str
    version: str = "1.0.0"
    author: str = ""
    description: str = ""
    category: str = "Other"
    url: str | None = None
    platform: str = "universal"
    api: int = 1
    priority_hint: int | None = None
    default_language: str = DEFAULT_LANGUAGE
    overrides: List[str] = field(default_factory=list)
    option_groups: List[OptionGroup] = field(default_factory=list)

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)

    def all_options(self) -> List[ModOption]:
        return [option for group in self.option_groups for option in group.options]

    def default_options(self) -> List[str]:
        selected: List[str] = []
        for group in self.option_groups:
            selected.extend(path for path in group.defaults if path not in selected)
        return selected


@dataclass(slots=True)
class ModEntry:
    """One mod as seen through a profile."""

    mod_id: str
    meta: ModMeta
    manifest: Manifest
    location: Path
    priority: int = 0
    enabled: bool = True
    options: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def version(self) -> str:
        # Content identity plus option selection: any change means new output.
        if not self.options:
            return self.mod_id
        return f"{self.mod_id}+{','.join(sorted(self.options))}"

    @property
    def source_label(self) -> str:
        return f"{self.priority}:{self.meta.name}"


@dataclass(slots=True)
class DeployConfig:
    output: Path
    method: DeployMethod = DeployMethod.COPY
    layout: DeployLayout = DeployLayout.WITHOUT_NAME
    loader_manifest: bool = False
    auto: bool = False
    executable: Path | None = None

    def signature(self) -> Dict[str, Any]:
        """Fields whose change requires removing previously deployed output."""

        return {
            "output": str(self.output),
            "method": self.method.value,
            "layout": self.layout.value,
        }


@dataclass(slots=True)
class BaselineConfig:
    base: Path
    update: Path | None = None
    dlc: Path | None = None


@dataclass(slots=True)
class PlatformSettings:
    name: str
    baseline: BaselineConfig
    deploy: DeployConfig | None = None


@dataclass(slots=True)
class PendingChangeSet:
    added: Set[str] = field(default_factory=set)
    modified: Set[str] = field(default_factory=set)
    removed: Set[str] = field(default_factory=set)

    def __bool__(self) -> bool:
        return bool(self.added or self.modified or self.removed)

    @property
    def total(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)

    @classmethod
    def between(cls, previous: Dict[str, str], current: Dict[str, str]) -> "PendingChangeSet":
        return cls(
            added={path for path in current if path not in previous},
            modified={path for path in current if path in previous and previous[path] != current[path]},
            removed={path for path in previous if path not in current},
        )


@dataclass(slots=True)
class ConflictRecord:
    path: str
    entries: List[ModEntry]
    winner: ModEntry
    losers: List[ModEntry] = field(default_factory=list)
    override: bool = False

    def involved_mods(self) -> Sequence[str]:
        return sorted({entry.name for entry in self.entries})


__all__ = [
    "BaselineConfig",
    "ConflictRecord",
    "DeployConfig",
    "DeployLayout",
    "DeployMethod",
    "Manifest",
    "ModEntry",
    "ModMeta",
    "ModOption",
    "OptionGroup",
    "OptionGroupType",
    "PendingChangeSet",
    "PlatformSettings",
    "ResourceState",
    "Variant",
    "split_variant_key",
]
