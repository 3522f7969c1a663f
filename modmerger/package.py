"""Mod packages: building from a folder, reading, and validating.

A package is a zip archive::

    meta.toml             mod metadata and option groups
    manifest.json         leaf paths touched, by variant
    contributions.json    {leaf key: {"type": diff|file|override, "blob": name}}
    data/<sha>            payload blobs (diffs are JSON documents)
    options/<path>/...    manifest.json + contributions.json per option

Leaf keys are ``<variant>/<path>`` with ``//`` separating nesting levels.
"""

from __future__ import annotations

import fnmatch
import json
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Tuple

import toml

from .baseline import Baseline
from .codec import decompose
from .composer import Contribution, ContributionKind
from .differ import ResourceDiff, diff
from .errors import ContainerError, PackageError, SchemaVersionError
from .file_utils import hash_bytes
from .formats import ResourceKind, RuleSet, format_for_path, parse_structured, resource_kind
from .localization import DEFAULT_LANGUAGE, language_from_path
from .logging_utils import log_debug, log_info, log_warn
from .models import Manifest, ModEntry, ModMeta, ModOption, OptionGroup, OptionGroupType, Variant
from .text_utils import normalize_path

META_NAME = "meta.toml"
MANIFEST_NAME = "manifest.json"
CONTRIBUTIONS_NAME = "contributions.json"
SUPPORTED_API = 1
ZIP_DATE = (1980, 1, 1, 0, 0, 0)


# --- metadata --------------------------------------------------------------


def parse_meta(text: str, source: str = META_NAME) -> ModMeta:
    try:
        raw = toml.loads(text)
    except toml.TomlDecodeError as exc:
        raise PackageError(f"Invalid TOML in {source}: {exc}") from exc
    if not raw.get("name"):
        raise PackageError(f"{source} is missing the mod name")
    api = int(raw.get("api", SUPPORTED_API))
    if api > SUPPORTED_API:
        raise SchemaVersionError(source, api, SUPPORTED_API)

    groups: List[OptionGroup] = []
    for group in raw.get("option_groups", []):
        options = [
            ModOption(
                name=str(option.get("name", option["path"])),
                path=normalize_path(str(option["path"])),
                description=str(option.get("description", "")),
                requires=[normalize_path(str(req)) for req in option.get("requires", [])],
            )
            for option in group.get("options", [])
        ]
        defaults = group.get("defaults", group.get("default", []))
        if isinstance(defaults, str):
            defaults = [defaults]
        groups.append(
            OptionGroup(
                name=str(group.get("name", "")),
                group_type=OptionGroupType(group.get("type", OptionGroupType.MULTIPLE.value)),
                options=options,
                description=str(group.get("description", "")),
                required=bool(group.get("required", False)),
                defaults=[normalize_path(str(path)) for path in defaults],
            )
        )

    return ModMeta(
        name=str(raw["name"]),
        version=str(raw.get("version", "1.0.0")),
        author=str(raw.get("author", "")),
        description=str(raw.get("description", "")),
        category=str(raw.get("category", "Other")),
        url=raw.get("url"),
        platform=str(raw.get("platform", "universal")),
        api=api,
        priority_hint=int(raw["priority"]) if raw.get("priority") is not None else None,
        default_language=str(raw.get("default_language", DEFAULT_LANGUAGE)),
        overrides=[str(pattern) for pattern in raw.get("overrides", [])],
        option_groups=groups,
    )


def dump_meta(meta: ModMeta) -> str:
    data: Dict[str, Any] = {
        "name": meta.name,
        "version": meta.version,
        "author": meta.author,
        "description": meta.description,
        "category": meta.category,
        "platform": meta.platform,
        "api": meta.api,
        "default_language": meta.default_language,
        "overrides": list(meta.overrides),
    }
    if meta.url:
        data["url"] = meta.url
    if meta.priority_hint is not None:
        data["priority"] = meta.priority_hint
    if meta.option_groups:
        data["option_groups"] = [
            {
                "name": group.name,
                "type": group.group_type.value,
                "description": group.description,
                "required": group.required,
                "defaults": list(group.defaults),
                "options": [
                    {
                        "name": option.name,
                        "path": option.path,
                        "description": option.description,
                        "requires": list(option.requires),
                    }
                    for option in group.options
                ],
            }
            for group in meta.option_groups
        ]
    return toml.dumps(data)


def validate_options(meta: ModMeta, selected: Iterable[str]) -> List[str]:
    """Check an option selection against the mod's groups; returns it normalized."""

    chosen = [normalize_path(path) for path in selected]
    known = {option.path: option for option in meta.all_options()}
    for path in chosen:
        if path not in known:
            raise PackageError(f"{meta.name} has no option {path!r}")
        for required in known[path].requires:
            if required not in chosen:
                raise PackageError(f"Option {path!r} of {meta.name} requires {required!r}")
    for group in meta.option_groups:
        picked = [path for path in chosen if path in group.option_paths]
        if group.group_type is OptionGroupType.EXCLUSIVE and len(picked) > 1:
            raise PackageError(f"Only one option of group {group.name!r} can be selected")
        if group.required and not picked:
            raise PackageError(f"Group {group.name!r} of {meta.name} requires a selection")
    return chosen


# --- building --------------------------------------------------------------


@dataclass(slots=True)
class _Layer:
    manifest: Manifest = field(default_factory=Manifest)
    contributions: Dict[str, Dict[str, str]] = field(default_factory=dict)


class PackageBuilder:
    """Turns a mod folder laid out like the game files into a package.

    Files identical to the baseline are dropped; structured leaves become
    node diffs; everything else is stored whole. Paths matching the meta's
    ``overrides`` patterns are stored raw and bypass merging.
    """

    def __init__(self, baseline: Baseline, rules: RuleSet | None = None) -> None:
        self.baseline = baseline
        self.rules = rules or RuleSet()
        self.blobs: Dict[str, bytes] = {}
        self.errors: List[str] = []

    def build(self, source: Path, output: Path) -> Path:
        meta_path = source / META_NAME
        if not meta_path.is_file():
            raise PackageError(f"{source} has no {META_NAME}")
        meta = parse_meta(meta_path.read_text(encoding="utf-8"), str(meta_path))

        layers: Dict[str, _Layer] = {"": self._scan(source, meta)}
        for option in meta.all_options():
            option_root = source / "options" / option.path
            if not option_root.is_dir():
                raise PackageError(f"Option folder missing: {option_root}")
            layers[option.path] = self._scan(option_root, meta)

        if all(layer.manifest.is_empty() for layer in layers.values()):
            raise PackageError(f"{meta.name} does not change any game file")
        self._write(output, meta, layers)
        log_info(f"Packaged {meta.name} ({len(self.blobs)} payloads) to {output}")
        return output

    def _scan(self, root: Path, meta: ModMeta) -> _Layer:
        layer = _Layer()
        for variant in Variant:
            variant_root = root / variant.value
            if not variant_root.is_dir():
                continue
            for path in sorted(variant_root.rglob("*")):
                if not path.is_file():
                    continue
                key = variant.key(path.relative_to(variant_root).as_posix())
                try:
                    self._add_file(layer, key, path.read_bytes(), meta)
                except ContainerError as exc:
                    self.errors.append(str(exc))
                    log_warn(f"{exc}; storing {key} as a whole file")
                    self._record(layer, key, "file", path.read_bytes())
        return layer

    def _is_override(self, key: str, meta: ModMeta) -> bool:
        return any(fnmatch.fnmatchcase(key, pattern) for pattern in meta.overrides)

    def _add_file(self, layer: _Layer, key: str, data: bytes, meta: ModMeta) -> None:
        override = self._is_override(key, meta)
        baseline_raw = self.baseline.read_file(key)
        if baseline_raw is None:
            self._record(layer, key, "override" if override else "file", data)
            return
        if baseline_raw == data:
            return

        base_parts = self.baseline.decomposed(key)
        mod_parts = decompose(data, path=key)
        base_leaves = base_parts.leaf_map() if base_parts else {}
        for leaf in mod_parts:
            before = base_leaves.get(leaf.virtual_path)
            if before == leaf.data:
                continue
            if override or self._is_override(leaf.virtual_path, meta):
                self._record(layer, leaf.virtual_path, "override", leaf.data)
            else:
                self._add_leaf(layer, leaf.virtual_path, before, leaf.data)
        removed = set(base_leaves) - {leaf.virtual_path for leaf in mod_parts}
        if removed:
            log_warn(f"{key}: {len(removed)} entries removed from the container are ignored")

    def _add_leaf(self, layer: _Layer, key: str, before: bytes | None, after: bytes) -> None:
        if before is None and language_from_path(key):
            before = self.baseline.read_localized(key)
        kind = resource_kind(key)
        if before is None or kind is ResourceKind.OPAQUE:
            self._record(layer, key, "file", after)
            return
        fmt = format_for_path(key)
        try:
            old_doc = parse_structured(before, fmt, key)
            new_doc = parse_structured(after, fmt, key)
        except ContainerError as exc:
            log_warn(f"{exc}; storing {key} as a whole file")
            self._record(layer, key, "file", after)
            return
        resource_diff = diff(old_doc, new_doc, self.rules.rule_for(key))
        if not resource_diff:
            log_debug(f"{key}: only formatting changed")
            return
        payload = json.dumps(resource_diff.to_dict(), ensure_ascii=False, sort_keys=True).encode("utf-8")
        self._record(layer, key, "diff", payload)

    def _record(self, layer: _Layer, key: str, kind: str, payload: bytes) -> None:
        digest = hash_bytes(payload)
        self.blobs[digest] = payload
        variant = Variant(key.split("/", 1)[0])
        layer.manifest.add(variant, key.split("/", 1)[1])
        layer.contributions[key] = {"type": kind, "blob": f"data/{digest}"}

    def _write(self, output: Path, meta: ModMeta, layers: Dict[str, _Layer]) -> None:
        output.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            def put(name: str, data: bytes) -> None:
                # Fixed timestamps keep identical content at an identical hash.
                info = zipfile.ZipInfo(name, date_time=ZIP_DATE)
                info.compress_type = zipfile.ZIP_DEFLATED
                archive.writestr(info, data)

            put(META_NAME, dump_meta(meta).encode("utf-8"))
            for option_path, layer in sorted(layers.items()):
                prefix = f"options/{option_path}/" if option_path else ""
                put(prefix + MANIFEST_NAME, json.dumps(layer.manifest.to_dict(), indent=2).encode("utf-8"))
                put(prefix + CONTRIBUTIONS_NAME, json.dumps(layer.contributions, indent=2, sort_keys=True).encode("utf-8"))
            for digest, payload in sorted(self.blobs.items()):
                put(f"data/{digest}", payload)


def package_folder(source: Path, output: Path, baseline: Baseline, rules: RuleSet | None = None) -> Path:
    return PackageBuilder(baseline, rules).build(source, output)


# --- reading ---------------------------------------------------------------


class ModPackage:
    """An installed (extracted) package directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        meta_path = root / META_NAME
        if not meta_path.is_file():
            raise PackageError(f"{root} is not a mod package: {META_NAME} missing")
        self.meta = parse_meta(meta_path.read_text(encoding="utf-8"), str(meta_path))
        self._layers: Dict[str, Tuple[Manifest, Dict[str, Dict[str, str]]]] = {}
        self._load_layer("")
        for option in self.meta.all_options():
            self._load_layer(option.path)

    def _load_layer(self, option_path: str) -> None:
        base = self.root / "options" / option_path if option_path else self.root
        try:
            manifest = Manifest.from_dict(json.loads((base / MANIFEST_NAME).read_text(encoding="utf-8")))
            contributions = json.loads((base / CONTRIBUTIONS_NAME).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PackageError(f"{self.meta.name}: unreadable package layer {option_path or '(base)'}: {exc}") from exc
        self._layers[option_path] = (manifest, contributions)

    @property
    def manifest(self) -> Manifest:
        """Everything the mod can touch, whatever options are selected."""

        total = Manifest()
        for manifest, _ in self._layers.values():
            total.extend(manifest)
        return total

    def manifest_for(self, options: Iterable[str]) -> Manifest:
        total = Manifest()
        for layer in ["", *options]:
            if layer in self._layers:
                total.extend(self._layers[layer][0])
        return total

    def keys_for(self, options: Iterable[str]) -> set[str]:
        keys: set[str] = set()
        for layer in ["", *options]:
            if layer in self._layers:
                keys.update(self._layers[layer][1])
        return keys

    def contribution_types(self, key: str, options: Iterable[str]) -> List[str]:
        layers = ["", *options]
        return [
            self._layers[layer][1][key]["type"]
            for layer in layers
            if layer in self._layers and key in self._layers[layer][1]
        ]

    def contributions(self, key: str, entry: ModEntry) -> List[Contribution]:
        """Contributions for ``key``: the base layer first, then selected options."""

        result: List[Contribution] = []
        for layer in ["", *entry.options]:
            record = self._layers.get(layer, (None, {}))[1].get(key)
            if record is None:
                continue
            payload = (self.root / record["blob"]).read_bytes()
            kind = record["type"]
            contribution = Contribution(
                mod_id=entry.mod_id,
                mod_name=entry.name,
                priority=entry.priority,
                version=entry.version,
                kind=ContributionKind.DIFF,
                language=language_from_path(key),
                default_language=self.meta.default_language,
            )
            if kind == "diff":
                try:
                    contribution.diff = ResourceDiff.from_dict(json.loads(payload.decode("utf-8")), key)
                except (UnicodeDecodeError, ValueError) as exc:
                    raise PackageError(f"{entry.name}: corrupt diff for {key}: {exc}") from exc
            elif kind == "override":
                contribution.kind = ContributionKind.OVERRIDE
                contribution.data = payload
            else:
                contribution.kind = ContributionKind.REPLACE
                contribution.data = payload
            result.append(contribution)
        return result

    def validate(self) -> None:
        """Read every diff once so incompatible data fails at install time."""

        for _, records in self._layers.values():
            for key, record in records.items():
                blob = self.root / record["blob"]
                if not blob.is_file():
                    raise PackageError(f"{self.meta.name}: missing payload {record['blob']} for {key}")
                if record["type"] == "diff":
                    data = json.loads(blob.read_text(encoding="utf-8"))
                    ResourceDiff.from_dict(data, f"{self.meta.name}:{key}")


def extract_package(package_path: Path, destination: Path) -> str:
    """Extract a package zip into ``destination``; returns the package id."""

    if not zipfile.is_zipfile(package_path):
        raise PackageError(f"{package_path} is not a mod package")
    data = package_path.read_bytes()
    package_id = hash_bytes(data)[:16]
    target = destination / package_id
    with zipfile.ZipFile(package_path) as archive:
        names = archive.namelist()
        if META_NAME not in names:
            raise PackageError(f"{package_path} has no {META_NAME}")
        for name in names:
            pure = PurePosixPath(name)
            if pure.is_absolute() or ".." in pure.parts:
                raise PackageError(f"{package_path} contains an unsafe entry {name!r}")
        archive.extractall(target)
    return package_id


__all__ = [
    "ModPackage",
    "PackageBuilder",
    "dump_meta",
    "extract_package",
    "package_folder",
    "parse_meta",
    "validate_options",
]
