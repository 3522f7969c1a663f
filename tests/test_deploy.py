from __future__ import annotations

import errno
import json
import os

import pytest

from modmerger.deploy import LOADER_MANIFEST, transfer
from modmerger.errors import DeploymentError
from modmerger.models import DeployLayout, DeployMethod

from conftest import dump_json, write_tree

CONFIG = "content/Data/Config.json"
EXTRA = "content/Data/Extra.bin"


@pytest.fixture
def manager(make_manager, game_dir, add_mod):
    write_tree(game_dir / "base", {"Data/Config.json": dump_json({"X": 1})})
    manager = make_manager()
    add_mod(manager, "A", {"content/Data/Config.json": dump_json({"X": 2})})
    add_mod(manager, "B", {"content/Data/Extra.bin": b"extra", "aoc/Data/Dlc.bin": b"dlc"})
    manager.apply()
    return manager


def deployed_files(root):
    return sorted(path.relative_to(root).as_posix() for path in root.rglob("*") if path.is_file() or path.is_symlink())


def test_copy_deploy_writes_every_merged_file(manager, tmp_path):
    changes = manager.deploy()
    out = tmp_path / "out"

    assert {CONFIG, EXTRA, "aoc/Data/Dlc.bin"} <= changes.added
    assert changes.added == set(manager.tracker.manifest())
    assert deployed_files(out) == sorted(changes.added)
    assert (out / CONFIG).read_bytes() == manager.tracker.merged_path(CONFIG).read_bytes()
    assert not manager.pending()
    assert not manager.deploy()


def test_switching_symlink_to_copy_replaces_links_with_files(manager, tmp_path):
    manager.set_deploy_method(DeployMethod.SYMLINK)
    out = tmp_path / "out"
    assert (out / EXTRA).is_symlink()
    assert os.path.realpath(out / EXTRA) == str(manager.tracker.merged_path(EXTRA).resolve())

    manager.set_deploy_method(DeployMethod.COPY)

    for key in (CONFIG, EXTRA):
        target = out / key
        assert not target.is_symlink()
        assert target.read_bytes() == manager.tracker.merged_path(key).read_bytes()


def test_symlink_deploy_removes_links_of_retired_paths(manager, tmp_path):
    manager.set_deploy_method(DeployMethod.SYMLINK)
    manager.set_enabled("B", False)
    manager.apply()

    changes = manager.deploy()

    assert changes.removed == {EXTRA, "aoc/Data/Dlc.bin"}
    assert not os.path.lexists(tmp_path / "out" / EXTRA)
    assert not (tmp_path / "out" / "aoc").exists()


def test_hardlink_falls_back_to_copy_across_devices(manager, tmp_path, monkeypatch):
    def cross_device(src, dst):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr(os, "link", cross_device)
    src = manager.tracker.merged_path(EXTRA)

    used = transfer(src, tmp_path / "elsewhere" / "Extra.bin", DeployMethod.HARDLINK)

    assert used is DeployMethod.COPY
    assert (tmp_path / "elsewhere" / "Extra.bin").read_bytes() == b"extra"


def test_hardlink_shares_the_merge_store_file(manager, tmp_path):
    manager.set_deploy_method(DeployMethod.HARDLINK)

    assert os.path.samefile(tmp_path / "out" / EXTRA, manager.tracker.merged_path(EXTRA))


def test_permission_errors_name_path_and_method(manager, tmp_path, monkeypatch):
    def denied(src, dst):
        raise PermissionError(errno.EACCES, "Permission denied")

    monkeypatch.setattr("shutil.copy2", denied)

    with pytest.raises(DeploymentError) as excinfo:
        manager.deploy()
    assert excinfo.value.method == "copy"
    assert excinfo.value.path.startswith(str(tmp_path / "out"))


def test_named_layout_and_loader_manifest(manager, tmp_path):
    config = manager.platform.deploy
    config.layout = DeployLayout.WITH_NAME
    config.loader_manifest = True

    manager.deploy()

    root = tmp_path / "out" / "ModMerger"
    assert (root / CONFIG).is_file()
    listing = json.loads((root / LOADER_MANIFEST).read_text())
    assert listing["files"] == sorted(manager.tracker.manifest())

    config.layout = DeployLayout.WITHOUT_NAME
    manager.deploy()
    assert not (root / CONFIG).exists()
    assert not (root / LOADER_MANIFEST).exists()
    assert (tmp_path / "out" / CONFIG).is_file()


def test_deploy_merges_stale_paths_before_writing(manager, tmp_path):
    manager.deploy()
    out = tmp_path / "out"
    assert (out / CONFIG).is_file()

    manager.uninstall("A")
    assert CONFIG in manager.pending().removed

    changes = manager.deploy()

    assert CONFIG in changes.removed
    assert not (out / CONFIG).exists()
    assert (out / EXTRA).read_bytes() == b"extra"
    assert not manager.tracker.stale


def test_reordering_mods_with_disjoint_paths_leaves_nothing_pending(manager):
    manager.deploy()

    manager.reorder("B", 0)
    manager.apply()

    assert not manager.pending()
