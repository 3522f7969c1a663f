from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import pytest
import toml

from modmerger.load_config import Settings
from modmerger.manager import ModManager
from modmerger.models import BaselineConfig, DeployConfig, ModEntry, PlatformSettings


def dump_json(document: Any) -> bytes:
    return (json.dumps(document, indent=2) + "\n").encode("utf-8")


def write_tree(root: Path, files: Dict[str, bytes]) -> None:
    for rel, data in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


def write_mod_folder(root: Path, name: str, files: Dict[str, bytes], **meta: Any) -> Path:
    folder = root / name
    write_tree(folder, files)
    (folder / "meta.toml").write_text(toml.dumps({"name": name, **meta}), encoding="utf-8")
    return folder


@pytest.fixture
def game_dir(tmp_path: Path) -> Path:
    root = tmp_path / "game"
    (root / "base").mkdir(parents=True)
    (root / "update").mkdir()
    (root / "dlc").mkdir()
    return root


@pytest.fixture
def settings(tmp_path: Path, game_dir: Path) -> Settings:
    platform = PlatformSettings(
        name="switch",
        baseline=BaselineConfig(base=game_dir / "base", update=game_dir / "update", dlc=game_dir / "dlc"),
        deploy=DeployConfig(output=tmp_path / "out"),
    )
    return Settings(storage=tmp_path / "storage", platform="switch", workers=2, platforms={"switch": platform})


@pytest.fixture
def make_manager(settings: Settings):
    def factory(**overrides: Any) -> ModManager:
        for name, value in overrides.items():
            setattr(settings, name, value)
        return ModManager(settings)

    return factory


@pytest.fixture
def add_mod(tmp_path: Path):
    """Package a mod folder against the manager's baseline and install it."""

    def installer(manager: ModManager, name: str, files: Dict[str, bytes], **meta: Any) -> ModEntry:
        folder = write_mod_folder(tmp_path / "mods_src", name, files, **meta)
        package = manager.package(folder, tmp_path / "packages" / f"{name}.zip")
        return manager.install(package)

    return installer
