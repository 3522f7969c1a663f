"""Materialize a profile's merge store into the deployment output tree.

Transfer modes:
  copy      shutil.copy2   always works, independent files
  hardlink  os.link        no extra space; falls back to copy across devices
  symlink   os.symlink     points into the merge store

``deployed.json`` in the profile directory records what was last written
and under which settings. When output, method or layout change, everything
recorded is removed before the new output is written.
"""

from __future__ import annotations

import errno
import json
import os
import shutil
from pathlib import Path
from typing import Dict, Iterable

from .errors import DeploymentError
from .file_utils import atomic_write_bytes, prune_empty_dirs, read_json, remove_path, write_json
from .logging_utils import log_debug, log_info, log_ok, log_warn
from .models import DeployConfig, DeployLayout, DeployMethod, PendingChangeSet
from .tracker import DEPLOYED_FILE, Tracker

LOADER_MANIFEST = "loader_manifest.json"
HARDLINK_FALLBACK_ERRORS = {errno.EXDEV, errno.EMLINK, errno.ENOTSUP, errno.EOPNOTSUPP}


def target_root(config: DeployConfig, deploy_name: str) -> Path:
    if config.layout is DeployLayout.WITH_NAME:
        return config.output / deploy_name
    return config.output


def transfer(src: Path, dst: Path, method: DeployMethod) -> DeployMethod:
    """Place ``src`` at ``dst``; returns the method actually used."""

    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
        if dst.is_symlink() or dst.exists():
            dst.unlink()
        if method is DeployMethod.HARDLINK:
            try:
                os.link(src, dst)
                return DeployMethod.HARDLINK
            except PermissionError:
                raise
            except OSError as exc:
                if exc.errno not in HARDLINK_FALLBACK_ERRORS:
                    raise
                log_debug(f"Hard link not possible for {dst} ({exc.strerror}); copying")
                shutil.copy2(src, dst)
                return DeployMethod.COPY
        if method is DeployMethod.SYMLINK:
            os.symlink(src.resolve(), dst)
            return DeployMethod.SYMLINK
        shutil.copy2(src, dst)
        return DeployMethod.COPY
    except OSError as exc:
        raise DeploymentError(str(dst), method.value, exc.strerror or str(exc)) from exc


class Materializer:
    def __init__(self, tracker: Tracker, config: DeployConfig, deploy_name: str) -> None:
        self.tracker = tracker
        self.config = config
        self.deploy_name = deploy_name
        self.state_path = tracker.root / DEPLOYED_FILE

    @property
    def root(self) -> Path:
        return target_root(self.config, self.deploy_name)

    def _state(self) -> Dict[str, object]:
        return read_json(self.state_path, default={}) or {}

    def _remove(self, root: Path, keys: Iterable[str]) -> int:
        removed = 0
        for key in keys:
            target = root / key
            try:
                if remove_path(target):
                    removed += 1
            except OSError as exc:
                raise DeploymentError(str(target), "remove", exc.strerror or str(exc)) from exc
            prune_empty_dirs(target.parent, root)
        return removed

    def undeploy(self) -> int:
        """Remove everything recorded as deployed, under the settings it was written with."""

        state = self._state()
        manifest = state.get("manifest", {})
        if not state:
            return 0
        root = Path(state.get("root", str(self.root)))
        removed = self._remove(root, manifest)
        remove_path(root / LOADER_MANIFEST)
        remove_path(self.state_path)
        log_info(f"Removed {removed} deployed file(s) from {root}")
        return removed

    def deploy(self) -> PendingChangeSet:
        state = self._state()
        signature = self.config.signature()
        if state and (state.get("config") != signature or state.get("root") != str(self.root)):
            log_warn("Deployment settings changed; removing output written with the previous settings")
            self.undeploy()
            state = {}

        deployed: Dict[str, str] = dict(state.get("manifest", {}))
        current = self.tracker.manifest()
        changes = PendingChangeSet.between(deployed, current)
        root = self.root
        if not changes and (root / LOADER_MANIFEST).exists() == self.config.loader_manifest:
            log_ok(f"{self.tracker.profile.name}: deployment is up to date")
            return changes

        self._remove(root, sorted(changes.removed))
        fallbacks = 0
        for key in sorted(changes.added | changes.modified):
            used = transfer(self.tracker.merged_path(key), root / key, self.config.method)
            if used is not self.config.method:
                fallbacks += 1
        if fallbacks:
            log_warn(f"{fallbacks} file(s) were copied because {self.config.method.value} was not possible")

        if self.config.loader_manifest:
            payload = {"name": self.deploy_name, "files": sorted(current)}
            atomic_write_bytes(root / LOADER_MANIFEST, (json.dumps(payload, indent=2) + "\n").encode("utf-8"))
        else:
            remove_path(root / LOADER_MANIFEST)

        write_json(self.state_path, {"manifest": current, "config": signature, "root": str(root)})
        self.tracker.clear_retired()
        log_ok(
            f"Deployed to {root}: {len(changes.added)} added, "
            f"{len(changes.modified)} modified, {len(changes.removed)} removed"
        )
        return changes


__all__ = ["LOADER_MANIFEST", "Materializer", "target_root", "transfer"]
