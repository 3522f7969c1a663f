"""Core package for ModMerger: merging and deploying game mods."""

from .codec import decompose, recompose
from .composer import Contribution, ContributionKind, MergeCache, MergedResource, merge
from .conflict_detector import build_conflict_records, detect_path_conflicts
from .deploy import Materializer
from .differ import ResourceDiff, diff
from .errors import (
    ContainerError,
    DeploymentError,
    ModMergerError,
    PackageError,
    RegistryError,
    SchemaVersionError,
    SizingError,
)
from .load_config import Settings, load_settings
from .manager import ModManager
from .models import DeployConfig, DeployLayout, DeployMethod, ModEntry, PendingChangeSet
from .package import ModPackage, package_folder
from .registry import Profile, Registry
from .report import export_report, print_conflict_details
from .sizetable import SizeTable, estimate_size
from .tracker import Tracker

__all__ = [
    "ContainerError",
    "Contribution",
    "ContributionKind",
    "DeployConfig",
    "DeployLayout",
    "DeployMethod",
    "DeploymentError",
    "Materializer",
    "MergeCache",
    "MergedResource",
    "ModEntry",
    "ModManager",
    "ModMergerError",
    "ModPackage",
    "PackageError",
    "PendingChangeSet",
    "Profile",
    "Registry",
    "RegistryError",
    "ResourceDiff",
    "SchemaVersionError",
    "Settings",
    "SizeTable",
    "SizingError",
    "Tracker",
    "build_conflict_records",
    "decompose",
    "detect_path_conflicts",
    "diff",
    "estimate_size",
    "export_report",
    "load_settings",
    "merge",
    "package_folder",
    "print_conflict_details",
    "recompose",
]
