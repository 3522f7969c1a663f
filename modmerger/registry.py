"""Installed mods and the profiles that order them.

Mods are stored once per platform under ``mods/<id>`` where the id is the
package content hash; profiles only reference them. Every profile mutation
returns the leaf keys whose merged output may have changed so the caller
can mark them stale.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Set

from .errors import PackageError, RegistryError
from .file_utils import ensure_directory, read_json, remove_path, write_json
from .logging_utils import log_debug, log_info, log_warn
from .models import ModEntry
from .package import ModPackage, extract_package, validate_options
from .text_utils import normalize_name

PROFILE_FILE = "profile.json"
DEFAULT_PROFILE = "Default"


@dataclass(slots=True)
class ProfileSlot:
    mod_id: str
    enabled: bool = True
    options: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {"id": self.mod_id, "enabled": self.enabled, "options": list(self.options)}

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ProfileSlot":
        return cls(
            mod_id=str(data["id"]),
            enabled=bool(data.get("enabled", True)),
            options=[str(option) for option in data.get("options", [])],
        )


class ModStore:
    """Extracted packages for one platform, shared by every profile."""

    def __init__(self, root: Path, platform: str) -> None:
        self.root = root
        self.platform = platform
        self._packages: Dict[str, ModPackage] = {}

    def ids(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(path.name for path in self.root.iterdir() if path.is_dir() and not path.name.startswith("."))

    def __contains__(self, mod_id: str) -> bool:
        return (self.root / mod_id).is_dir()

    def get(self, mod_id: str) -> ModPackage:
        package = self._packages.get(mod_id)
        if package is None:
            location = self.root / mod_id
            if not location.is_dir():
                raise RegistryError(f"Mod {mod_id} is not installed")
            package = ModPackage(location)
            self._packages[mod_id] = package
        return package

    def install(self, package_path: Path) -> str:
        ensure_directory(self.root)
        staging = self.root / ".staging"
        remove_path(staging)
        mod_id = extract_package(package_path, staging)
        extracted = staging / mod_id
        try:
            package = ModPackage(extracted)
            if package.meta.platform not in ("universal", self.platform):
                raise RegistryError(
                    f"{package.meta.name} targets platform {package.meta.platform}, not {self.platform}"
                )
            package.validate()
            target = self.root / mod_id
            if target.exists():
                log_info(f"{package.meta.name} is already stored as {mod_id}")
            else:
                shutil.move(str(extracted), str(target))
        finally:
            remove_path(staging)
        self._packages.pop(mod_id, None)
        return mod_id

    def find(self, name_or_id: str) -> str:
        if name_or_id in self:
            return name_or_id
        wanted = normalize_name(name_or_id)
        matches = [mod_id for mod_id in self.ids() if self.get(mod_id).meta.normalized_name == wanted]
        if not matches:
            raise RegistryError(f"No installed mod named {name_or_id!r}")
        if len(matches) > 1:
            raise RegistryError(f"{name_or_id!r} is ambiguous; use one of the ids {', '.join(matches)}")
        return matches[0]

    def delete(self, mod_id: str) -> None:
        self._packages.pop(mod_id, None)
        remove_path(self.root / mod_id)


class Profile:
    """Ordered mod list. Index in ``slots`` is the priority: 0 applies first."""

    def __init__(self, name: str, root: Path, store: ModStore) -> None:
        self.name = name
        self.root = root
        self.store = store
        data = read_json(root / PROFILE_FILE, default={}) or {}
        self.slots: List[ProfileSlot] = [ProfileSlot.from_dict(item) for item in data.get("mods", [])]

    def save(self) -> None:
        write_json(self.root / PROFILE_FILE, {"name": self.name, "mods": [slot.to_dict() for slot in self.slots]})

    def _index(self, mod_id: str) -> int:
        for index, slot in enumerate(self.slots):
            if slot.mod_id == mod_id:
                return index
        raise RegistryError(f"Mod {mod_id} is not in profile {self.name}")

    def __contains__(self, mod_id: str) -> bool:
        return any(slot.mod_id == mod_id for slot in self.slots)

    def entry(self, slot: ProfileSlot, priority: int) -> ModEntry:
        package = self.store.get(slot.mod_id)
        return ModEntry(
            mod_id=slot.mod_id,
            meta=package.meta,
            manifest=package.manifest_for(slot.options),
            location=package.root,
            priority=priority,
            enabled=slot.enabled,
            options=list(slot.options),
        )

    def entries(self, enabled_only: bool = False) -> List[ModEntry]:
        result = [self.entry(slot, priority) for priority, slot in enumerate(self.slots)]
        if enabled_only:
            return [entry for entry in result if entry.enabled]
        return result

    def _keys(self, slots: Iterable[ProfileSlot]) -> Set[str]:
        keys: Set[str] = set()
        for slot in slots:
            keys |= self.store.get(slot.mod_id).keys_for(slot.options)
        return keys

    # --- mutations ---------------------------------------------------------

    def add(self, mod_id: str, priority: int | None = None, options: Iterable[str] | None = None) -> Set[str]:
        if mod_id in self:
            raise RegistryError(f"Mod {mod_id} is already in profile {self.name}")
        meta = self.store.get(mod_id).meta
        chosen = validate_options(meta, meta.default_options() if options is None else options)
        slot = ProfileSlot(mod_id=mod_id, options=chosen)
        if priority is None:
            priority = len(self.slots) if meta.priority_hint is None else meta.priority_hint
        index = max(0, min(priority, len(self.slots)))
        self.slots.insert(index, slot)
        self.save()
        log_info(f"Added {meta.name} to {self.name} at priority {index}")
        return self._keys(self.slots[index:])

    def remove(self, mod_id: str) -> Set[str]:
        index = self._index(mod_id)
        affected = self._keys(self.slots[index:])
        del self.slots[index]
        self.save()
        return affected

    def move(self, mod_id: str, priority: int) -> Set[str]:
        index = self._index(mod_id)
        target = max(0, min(priority, len(self.slots) - 1))
        if target == index:
            return set()
        low, high = sorted((index, target))
        affected = self._keys(self.slots[low:high + 1])
        slot = self.slots.pop(index)
        self.slots.insert(target, slot)
        self.save()
        log_debug(f"Moved {mod_id} from priority {index} to {target} in {self.name}")
        return affected

    def set_enabled(self, mod_id: str, enabled: bool) -> Set[str]:
        slot = self.slots[self._index(mod_id)]
        if slot.enabled == enabled:
            return set()
        slot.enabled = enabled
        self.save()
        return self._keys([slot])

    def set_options(self, mod_id: str, options: Iterable[str]) -> Set[str]:
        slot = self.slots[self._index(mod_id)]
        chosen = validate_options(self.store.get(mod_id).meta, options)
        if sorted(chosen) == sorted(slot.options):
            return set()
        before = self._keys([slot])
        slot.options = chosen
        self.save()
        return before | self._keys([slot])


class Registry:
    """Mod store and profiles of one platform under ``<storage>/<platform>``."""

    def __init__(self, root: Path, platform: str) -> None:
        self.root = root
        self.platform = platform
        self.store = ModStore(root / "mods", platform)
        self.profiles_root = root / "profiles"

    def profile_names(self) -> List[str]:
        if not self.profiles_root.is_dir():
            return []
        return sorted(path.name for path in self.profiles_root.iterdir() if (path / PROFILE_FILE).is_file())

    def profile(self, name: str, create: bool = False) -> Profile:
        root = self.profiles_root / name
        if not (root / PROFILE_FILE).is_file():
            if not create:
                raise RegistryError(f"Profile {name!r} does not exist on {self.platform}")
            ensure_directory(root)
            profile = Profile(name, root, self.store)
            profile.save()
            log_info(f"Created profile {name}")
            return profile
        return Profile(name, root, self.store)

    def referenced_ids(self) -> Set[str]:
        return {slot.mod_id for name in self.profile_names() for slot in self.profile(name).slots}

    def install(self, package_path: Path) -> str:
        try:
            return self.store.install(package_path)
        except (OSError, ValueError, KeyError) as exc:
            raise PackageError(f"Could not install {package_path}: {exc}") from exc

    def collect_garbage(self) -> List[str]:
        """Delete stored mods that no profile references."""

        used = self.referenced_ids()
        removed = [mod_id for mod_id in self.store.ids() if mod_id not in used]
        for mod_id in removed:
            log_warn(f"Deleting unreferenced mod {mod_id}")
            self.store.delete(mod_id)
        return removed


__all__ = ["DEFAULT_PROFILE", "ModStore", "Profile", "ProfileSlot", "Registry"]
