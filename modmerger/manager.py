from __future__ import annotations

from pathlib import Path
from typing import Iterable, List

from .baseline import Baseline
from .batch import BatchResult, CancelToken
from .conflict_detector import build_conflict_records, detect_path_conflicts
from .deploy import Materializer
from .errors import DeploymentError, ModMergerError
from .load_config import Settings
from .logging_utils import log_info, log_warn
from .models import ConflictRecord, DeployMethod, ModEntry, PendingChangeSet
from .package import package_folder
from .registry import Registry
from .report import export_report
from .tooling import ExternalTool
from .tracker import Tracker


class ModManager:
    """One platform and one profile: registry mutations, merging and deployment."""

    def __init__(self, settings: Settings, platform: str | None = None, profile: str | None = None) -> None:
        self.settings = settings
        self.platform = settings.platform_settings(platform)
        self.registry = Registry(settings.platform_root(self.platform.name), self.platform.name)
        self.baseline = Baseline(self.platform.baseline)
        self.rules = settings.rule_set()
        self.profile = self.registry.profile(profile or settings.profile, create=True)
        self.tracker = Tracker(
            self.profile,
            self.baseline,
            self.rules,
            language=settings.language,
            workers=settings.workers,
        )

    # --- registry ----------------------------------------------------------

    def package(self, source: Path, output: Path) -> Path:
        return package_folder(source, output, self.baseline, self.rules)

    def entry(self, name_or_id: str) -> ModEntry:
        mod_id = self.registry.store.find(name_or_id)
        for entry in self.profile.entries():
            if entry.mod_id == mod_id:
                return entry
        raise ModMergerError(f"{name_or_id} is not in profile {self.profile.name}")

    def install(
        self,
        package_path: Path,
        priority: int | None = None,
        options: Iterable[str] | None = None,
    ) -> ModEntry:
        mod_id = self.registry.install(package_path)
        self.tracker.mark_stale(self.profile.add(mod_id, priority, options))
        return self.entry(mod_id)

    def uninstall(self, name_or_id: str) -> None:
        entry = self.entry(name_or_id)
        self.tracker.mark_stale(self.profile.remove(entry.mod_id))
        if entry.mod_id not in self.registry.referenced_ids():
            self.registry.store.delete(entry.mod_id)
        log_info(f"Removed {entry.name} from {self.profile.name}")

    def set_enabled(self, name_or_id: str, enabled: bool) -> None:
        entry = self.entry(name_or_id)
        self.tracker.mark_stale(self.profile.set_enabled(entry.mod_id, enabled))
        log_info(f"{'Enabled' if enabled else 'Disabled'} {entry.name}")

    def reorder(self, name_or_id: str, priority: int) -> None:
        entry = self.entry(name_or_id)
        self.tracker.mark_stale(self.profile.move(entry.mod_id, priority))

    def set_options(self, name_or_id: str, options: Iterable[str]) -> None:
        entry = self.entry(name_or_id)
        self.tracker.mark_stale(self.profile.set_options(entry.mod_id, options))

    # --- merge and deploy --------------------------------------------------

    def apply(self, refresh: bool = False, cancel: CancelToken | None = None) -> BatchResult:
        result = self.tracker.apply(refresh=refresh, cancel=cancel)
        deploy = self.platform.deploy
        if deploy is not None and deploy.auto and not result.cancelled:
            self.materializer().deploy()
        return result

    def recompute(self) -> BatchResult | None:
        """Merge stale paths so the merge store reflects the profile. Failed files stay stale."""

        if not self.tracker.outdated():
            return None
        log_info(f"Merging pending changes in {self.profile.name} first")
        result = self.tracker.apply()
        if result.errors:
            log_warn(f"{len(result.errors)} file(s) failed to merge; only completed files are used")
        return result

    def pending(self) -> PendingChangeSet:
        self.recompute()
        return self.tracker.pending()

    def materializer(self) -> Materializer:
        if self.platform.deploy is None:
            raise DeploymentError(self.platform.name, "none", "no deployment settings for this platform")
        return Materializer(self.tracker, self.platform.deploy, self.settings.deploy_name)

    def deploy(self) -> PendingChangeSet:
        materializer = self.materializer()
        self.recompute()
        return materializer.deploy()

    def set_deploy_method(self, method: DeployMethod) -> PendingChangeSet:
        materializer = self.materializer()
        self.recompute()
        materializer.config.method = method
        return materializer.deploy()

    # --- reporting ---------------------------------------------------------

    def conflicts(self) -> List[ConflictRecord]:
        entries = self.profile.entries(enabled_only=True)
        return build_conflict_records(detect_path_conflicts(entries, self.registry.store), self.registry.store)

    def report(self, output_path: Path) -> Path:
        export_report(output_path, self.profile.entries(), self.conflicts(), self.pending())
        log_info(f"Report saved to {output_path}")
        return output_path

    def launch(self, dry_run: bool = False) -> None:
        deploy = self.platform.deploy
        if deploy is None or deploy.executable is None:
            raise ModMergerError(f"No executable configured for {self.platform.name}")
        pending = self.pending()
        if pending:
            log_warn(f"{pending.total} merged file(s) are not deployed yet")
        ExternalTool(deploy.executable).run(dry_run=dry_run)


__all__ = ["ModManager"]
