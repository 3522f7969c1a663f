from __future__ import annotations

import pytest
import toml

from cli import main
from modmerger.models import DeployMethod

from conftest import dump_json, write_mod_folder, write_tree


@pytest.fixture
def config_path(tmp_path):
    write_tree(tmp_path / "game" / "base", {"Data/Config.json": dump_json({"X": 1})})
    path = tmp_path / "config.toml"
    path.write_text(
        toml.dumps(
            {
                "storage": "storage",
                "platform": "switch",
                "platforms": {
                    "switch": {
                        "baseline": {"base": "game/base"},
                        "deploy": {"output": "out", "method": "copy"},
                    }
                },
            }
        ),
        encoding="utf-8",
    )
    return path


def run(config_path, *args):
    return main(["--config-path", str(config_path), *args])


def test_package_install_apply_and_deploy(config_path, tmp_path):
    folder = write_mod_folder(tmp_path / "src", "Tweaks", {"content/Data/Config.json": dump_json({"X": 2})})
    package = tmp_path / "Tweaks.zip"

    assert run(config_path, "package", str(folder), str(package)) == 0
    assert run(config_path, "install", str(package)) == 0
    assert run(config_path, "apply") == 0
    assert run(config_path, "deploy") == 0
    assert (tmp_path / "out" / "content" / "Data" / "Config.json").is_file()
    assert run(config_path, "list-profiles") == 0

    assert run(config_path, "report", "--export-path", str(tmp_path / "reports")) == 0
    assert (tmp_path / "reports" / "mod_report.xlsx").is_file()


def test_mode_switch_is_saved(config_path):
    assert run(config_path, "mode", "symlink") == 0

    saved = toml.loads(config_path.read_text(encoding="utf-8"))
    assert saved["platforms"]["switch"]["deploy"]["method"] == DeployMethod.SYMLINK.value


def test_failures_return_one(config_path, tmp_path):
    assert run(config_path, "uninstall", "Nothing") == 1
    assert run(config_path, "--platform", "wiiu", "deploy") == 1
    assert run(config_path, "launch", "--dry-run") == 1
