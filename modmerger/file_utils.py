from __future__ import annotations

import hashlib
import json
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any, Sequence

from .logging_utils import log_info


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write through a sibling temp file so readers never see half a file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.tmp")
    with temp_path.open("wb") as writer:
        writer.write(data)
    os.replace(temp_path, path)


def read_json(path: Path, default: Any = None) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def write_json(path: Path, data: Any) -> None:
    text = json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True)
    atomic_write_bytes(path, (text + "\n").encode("utf-8"))


def remove_path(path: Path) -> bool:
    """Remove a file, link or directory tree. Returns False if nothing was there."""

    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def prune_empty_dirs(start: Path, stop: Path) -> None:
    """Remove empty parents of ``start`` up to, not including, ``stop``."""

    current = start
    while current != stop and stop in current.parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent


def run_command(command: Sequence[str], *, cwd: Path | None = None, dry_run: bool = False) -> None:
    log_info(f"Running: {' '.join(command)}")
    if dry_run:
        return
    subprocess.Popen(list(command), cwd=str(cwd) if cwd else None)
