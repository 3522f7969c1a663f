from __future__ import annotations

import toml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .batch import DEFAULT_WORKERS
from .formats import MergeRule, RuleSet, rules_from_config
from .localization import DEFAULT_LANGUAGE, is_language
from .logging_utils import log_warn
from .models import BaselineConfig, DeployConfig, DeployLayout, DeployMethod, PlatformSettings
from .registry import DEFAULT_PROFILE

DEFAULT_STORAGE = Path("~/.local/share/modmerger")
DEFAULT_DEPLOY_NAME = "ModMerger"


@dataclass(slots=True)
class Settings:
    storage: Path = field(default_factory=DEFAULT_STORAGE.expanduser)
    platform: str | None = None
    profile: str = DEFAULT_PROFILE
    language: str = DEFAULT_LANGUAGE
    deploy_name: str = DEFAULT_DEPLOY_NAME
    workers: int = DEFAULT_WORKERS
    merge_rules: List[MergeRule] = field(default_factory=list)
    platforms: Dict[str, PlatformSettings] = field(default_factory=dict)

    def platform_settings(self, name: str | None = None) -> PlatformSettings:
        name = name or self.platform
        if not name:
            raise ValueError("No platform selected; set 'platform' in the configuration")
        if name not in self.platforms:
            raise ValueError(f"Platform {name!r} is not configured")
        return self.platforms[name]

    def rule_set(self) -> RuleSet:
        rules = RuleSet()
        rules.extend(self.merge_rules)
        return rules

    def platform_root(self, name: str | None = None) -> Path:
        return self.storage / self.platform_settings(name).name


def _path(value: Any, base: Path) -> Path:
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else base / path


def _parse_platform(name: str, raw: Dict[str, Any], base: Path, config_path: Path) -> PlatformSettings:
    baseline_raw = raw.get("baseline", {})
    if "base" not in baseline_raw:
        raise ValueError(f"[platforms.{name}.baseline] needs 'base' in {config_path}")
    baseline = BaselineConfig(
        base=_path(baseline_raw["base"], base),
        update=_path(baseline_raw["update"], base) if baseline_raw.get("update") else None,
        dlc=_path(baseline_raw["dlc"], base) if baseline_raw.get("dlc") else None,
    )

    deploy = None
    deploy_raw = raw.get("deploy")
    if deploy_raw:
        if "output" not in deploy_raw:
            raise ValueError(f"[platforms.{name}.deploy] needs 'output' in {config_path}")
        try:
            deploy = DeployConfig(
                output=_path(deploy_raw["output"], base),
                method=DeployMethod(deploy_raw.get("method", DeployMethod.COPY.value)),
                layout=DeployLayout(deploy_raw.get("layout", DeployLayout.WITHOUT_NAME.value)),
                loader_manifest=bool(deploy_raw.get("loader_manifest", False)),
                auto=bool(deploy_raw.get("auto", False)),
                executable=_path(deploy_raw["executable"], base) if deploy_raw.get("executable") else None,
            )
        except ValueError as exc:
            raise ValueError(f"Invalid deploy setting for platform {name} in {config_path}: {exc}") from exc
    return PlatformSettings(name=name, baseline=baseline, deploy=deploy)


def load_settings(config_path: Path) -> Settings:
    """Load program settings from a TOML file.

    Relative paths are resolved against the file's directory. A missing file
    yields the defaults, which know no platform yet.
    """

    settings = Settings()
    if not config_path.exists():
        log_warn(f"Config file {config_path} not found. Proceeding with defaults.")
        return settings

    raw_text = config_path.read_text(encoding="utf-8")
    try:
        config = toml.loads(raw_text)
    except toml.TomlDecodeError as exc:
        raise ValueError(f"Invalid TOML in config file: {config_path}") from exc

    base = config_path.parent
    if "storage" in config:
        settings.storage = _path(config["storage"], base)
    settings.platform = config.get("platform")
    settings.profile = str(config.get("profile", DEFAULT_PROFILE))
    settings.deploy_name = str(config.get("deploy_name", DEFAULT_DEPLOY_NAME))
    settings.workers = max(1, int(config.get("workers", DEFAULT_WORKERS)))

    language = str(config.get("language", DEFAULT_LANGUAGE))
    if not is_language(language):
        log_warn(f"Unknown language {language!r} in {config_path}; using {DEFAULT_LANGUAGE}")
        language = DEFAULT_LANGUAGE
    settings.language = language

    settings.merge_rules = rules_from_config(config.get("merge_rules", []))
    for name, raw in config.get("platforms", {}).items():
        settings.platforms[name] = _parse_platform(name, raw, base, config_path)
    if settings.platform and settings.platform not in settings.platforms:
        raise ValueError(f"Current platform {settings.platform!r} has no [platforms.{settings.platform}] table")
    return settings


def save_deploy_method(config_path: Path, platform: str, method: DeployMethod) -> None:
    """Rewrite the deploy method of ``platform`` in place, keeping other settings."""

    config = toml.loads(config_path.read_text(encoding="utf-8"))
    deploy = config.setdefault("platforms", {}).setdefault(platform, {}).setdefault("deploy", {})
    deploy["method"] = method.value
    config_path.write_text(toml.dumps(config), encoding="utf-8")


__all__ = ["Settings", "load_settings", "save_deploy_method"]
