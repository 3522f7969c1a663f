"""Pending-change tracking and incremental re-merging for one profile.

Profile directory layout::

    stale.json        leaf keys awaiting a re-merge
    state.json        merged top-level files (key -> sha256) and their leaves
    deployed.json     written by the deployer: last deployed manifest + config
    sizetable.json    size table entries that differ from the game's table
    cache/            merge cache index and blob store
    merged/           merge store: one recomposed file per touched top-level key
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Set, Tuple

from .baseline import Baseline
from .batch import DEFAULT_WORKERS, BatchResult, CancelToken, run_batch
from .codec import recompose
from .composer import Contribution, MergeCache, MergedResource, cache_key, merge, order_contributions
from .errors import ContainerError
from .file_utils import atomic_write_bytes, hash_bytes, prune_empty_dirs, read_json, remove_path, write_json
from .formats import ResourceKind, RuleSet, resource_kind
from .localization import DEFAULT_LANGUAGE, language_from_path, localize_path
from .logging_utils import log_debug, log_info, log_ok, log_warn
from .models import ModEntry, PendingChangeSet, ResourceState
from .package import ModPackage
from .registry import Profile
from .sizetable import SIZE_TABLE_PATH, SizeTable, load_baseline_table
from .text_utils import top_level_file

STALE_FILE = "stale.json"
STATE_FILE = "state.json"
DEPLOYED_FILE = "deployed.json"
SIZE_STATE_FILE = "sizetable.json"


@dataclass(slots=True)
class UnitResult:
    """Outcome of re-merging every leaf of one top-level file."""

    top: str
    data: bytes | None
    merged: Dict[str, MergedResource] = field(default_factory=dict)
    cache_hits: int = 0


def output_key(key: str, language: str) -> str:
    """Where a mod leaf lands: localized text is folded into the configured language."""

    if language_from_path(key) and resource_kind(key) is ResourceKind.LOCALIZED:
        return localize_path(key, language)
    return key


class Tracker:
    def __init__(
        self,
        profile: Profile,
        baseline: Baseline,
        rules: RuleSet | None = None,
        language: str = DEFAULT_LANGUAGE,
        workers: int = DEFAULT_WORKERS,
    ) -> None:
        self.profile = profile
        self.baseline = baseline
        self.rules = rules or RuleSet()
        self.language = language
        self.workers = workers
        self.root = profile.root
        self.merge_root = self.root / "merged"
        self.cache = MergeCache(self.root / "cache")

        self.stale: Set[str] = set(read_json(self.root / STALE_FILE, default=[]) or [])
        state = read_json(self.root / STATE_FILE, default={}) or {}
        self.files: Dict[str, str] = dict(state.get("files", {}))
        self.leaves: Dict[str, str] = dict(state.get("leaves", {}))
        self.retired: Set[str] = set(state.get("retired", []))
        previous_language = state.get("language")
        if previous_language and previous_language != language:
            self._relocalize(previous_language)
        self.size_table = SizeTable.load(
            load_baseline_table(baseline.read_file(SIZE_TABLE_PATH)),
            self.root / SIZE_STATE_FILE,
        )

    # --- stale set ---------------------------------------------------------

    def mark_stale(self, keys: Iterable[str]) -> int:
        added = {output_key(key, self.language) for key in keys} - self.stale
        if added:
            self.stale |= added
            write_json(self.root / STALE_FILE, sorted(self.stale))
            log_debug(f"{len(added)} path(s) marked stale in {self.profile.name}")
        return len(added)

    def _relocalize(self, previous: str) -> None:
        """Queue text merged for another language so apply() retires it."""

        old = {key for key in self.leaves if output_key(key, self.language) != key}
        if not old:
            return
        log_info(f"Language changed from {previous} to {self.language}; {len(old)} localized path(s) will be re-merged")
        self.stale |= old
        write_json(self.root / STALE_FILE, sorted(self.stale))

    def _save_state(self) -> None:
        write_json(self.root / STALE_FILE, sorted(self.stale))
        write_json(
            self.root / STATE_FILE,
            {"files": self.files, "leaves": self.leaves, "retired": sorted(self.retired), "language": self.language},
        )

    # --- contributions -----------------------------------------------------

    def _sources(self, entries: List[ModEntry]) -> Dict[str, List[Tuple[ModEntry, str]]]:
        """Output leaf key -> (mod, key inside the mod) pairs, for enabled mods."""

        sources: Dict[str, List[Tuple[ModEntry, str]]] = defaultdict(list)
        for entry in entries:
            package = self.profile.store.get(entry.mod_id)
            for key in sorted(package.keys_for(entry.options)):
                if key == SIZE_TABLE_PATH:
                    log_warn(f"{entry.name} ships the size table; it is generated and will be ignored")
                    continue
                sources[output_key(key, self.language)].append((entry, key))
        return sources

    def _contributions(self, pairs: List[Tuple[ModEntry, str]]) -> List[Contribution]:
        result: List[Contribution] = []
        for entry, key in pairs:
            package: ModPackage = self.profile.store.get(entry.mod_id)
            result.extend(package.contributions(key, entry))
        return result

    def _baseline_leaf(self, key: str) -> bytes | None:
        if language_from_path(key):
            return self.baseline.read_localized(key)
        return self.baseline.read(key)

    # --- merging -----------------------------------------------------------

    def _merge_unit(
        self,
        top: str,
        leaf_keys: List[str],
        sources: Dict[str, List[Tuple[ModEntry, str]]],
        refresh: bool,
    ) -> UnitResult:
        result = UnitResult(top=top, data=None)
        for key in leaf_keys:
            contributions = self._contributions(sources[key])
            ordered = order_contributions(key, contributions, self.language)
            if not ordered:
                continue
            hit = None if refresh else self.cache.lookup(key, cache_key(ordered))
            if hit is not None:
                result.cache_hits += 1
                result.merged[key] = hit
                continue
            merged = merge(key, self._baseline_leaf(key), ordered, self.rules.rule_for(key), self.language)
            if merged is not None:
                result.merged[key] = merged

        if not result.merged:
            return result

        container = self.baseline.decomposed(top)
        if container is None:
            if set(result.merged) != {top}:
                raise ContainerError(top, "nested entries need a container in the game files")
            result.data = result.merged[top].data
            return result
        if top in result.merged and container.metadata.root_is_container:
            if len(result.merged) > 1:
                log_warn(f"{top} is replaced as a whole; merged entries inside it are dropped")
            result.data = result.merged[top].data
            return result
        leaves = container.leaf_map()
        leaves.update({key: resource.data for key, resource in result.merged.items()})
        result.data = recompose(leaves, container.metadata)
        return result

    def outdated(self) -> bool:
        """True while stale paths or never-merged sources are waiting for apply()."""

        if self.stale:
            return True
        sources = self._sources(self.profile.entries(enabled_only=True))
        return any(key not in self.leaves for key in sources)

    def apply(self, refresh: bool = False, cancel: CancelToken | None = None) -> BatchResult:
        """Re-merge stale paths (every path when ``refresh``) into the merge store."""

        entries = self.profile.entries(enabled_only=True)
        sources = self._sources(entries)

        if refresh:
            self.cache.clear()
            self.size_table.clear()
            wanted = set(sources) | set(self.leaves)
        else:
            wanted = set(self.stale)
            # Paths never merged before are new work, not stale work.
            wanted |= {key for key in sources if key not in self.leaves}

        by_top: Dict[str, List[str]] = defaultdict(list)
        for key in sources:
            by_top[top_level_file(key)].append(key)
        tops = sorted({top_level_file(key) for key in wanted})
        tops = [top for top in tops if top != SIZE_TABLE_PATH]

        if not tops:
            log_ok(f"{self.profile.name}: nothing to merge")
            return BatchResult()

        log_info(f"Merging {len(tops)} file(s) for {self.profile.name}")
        result = run_batch(
            tops,
            lambda top: self._merge_unit(top, sorted(by_top.get(top, [])), sources, refresh),
            workers=self.workers,
            cancel=cancel,
            label="files merged",
        )
        self._commit(result, refresh)
        return result

    def _commit(self, result: BatchResult, refresh: bool) -> None:
        hits = 0
        for top, unit in result.results.items():
            hits += unit.cache_hits
            previous = {leaf for leaf, owner in self.leaves.items() if owner == top}
            for leaf in previous - set(unit.merged):
                self.leaves.pop(leaf, None)
                self.cache.invalidate([leaf])
                self.size_table.retire(leaf)
                self.retired.add(leaf)
            for leaf, resource in unit.merged.items():
                self.cache.store(resource)
                self.size_table.update(leaf, resource.data)
                self.leaves[leaf] = top
                self.retired.discard(leaf)

            target = self.merge_root / top
            if unit.data is None:
                if self.files.pop(top, None) is not None:
                    remove_path(target)
                    prune_empty_dirs(target.parent, self.merge_root)
                    log_debug(f"Retired {top}")
            else:
                atomic_write_bytes(target, unit.data)
                self.files[top] = hash_bytes(unit.data)

            self.stale = {key for key in self.stale if top_level_file(key) != top}

        self._write_size_table()
        self.cache.save()
        self.size_table.save(self.root / SIZE_STATE_FILE)
        self._save_state()
        if hits:
            log_debug(f"{hits} leaf merge(s) served from cache")
        if result.errors:
            log_warn(f"{len(result.errors)} file(s) could not be merged and stay stale")

    def _write_size_table(self) -> None:
        target = self.merge_root / SIZE_TABLE_PATH
        if len(self.size_table):
            data = self.size_table.to_bytes()
            atomic_write_bytes(target, data)
            self.files[SIZE_TABLE_PATH] = hash_bytes(data)
        elif self.files.pop(SIZE_TABLE_PATH, None) is not None:
            remove_path(target)
            prune_empty_dirs(target.parent, self.merge_root)

    # --- reporting ---------------------------------------------------------

    def manifest(self) -> Dict[str, str]:
        """Current merged output: top-level key -> content digest."""

        return dict(self.files)

    def deployed_manifest(self) -> Dict[str, str]:
        state = read_json(self.root / DEPLOYED_FILE, default={}) or {}
        return dict(state.get("manifest", {}))

    def pending(self) -> PendingChangeSet:
        return PendingChangeSet.between(self.deployed_manifest(), self.manifest())

    def merged_path(self, key: str) -> Path:
        return self.merge_root / key

    def state(self, key: str) -> ResourceState:
        if key in self.stale:
            return ResourceState.STALE
        top = self.leaves.get(key)
        if top is not None:
            if self.deployed_manifest().get(top) == self.files.get(top):
                return ResourceState.DEPLOYED
            return ResourceState.MERGED
        if key in self.retired:
            return ResourceState.RETIRED
        for entry in self.profile.entries(enabled_only=True):
            if key in self.profile.store.get(entry.mod_id).keys_for(entry.options):
                return ResourceState.DIFFED
        return ResourceState.UNTOUCHED

    def clear_retired(self) -> None:
        """Forget retired leaves once their removal has been deployed."""

        self.retired.clear()
        self._save_state()


__all__ = ["Tracker", "UnitResult", "output_key", "DEPLOYED_FILE"]
