from __future__ import annotations

import threading

LEVEL_DEFAULT = "info"

_verbose = False
_lock = threading.Lock()


def _normalize_level(level: str | None) -> str:
    if not level:
        return LEVEL_DEFAULT
    return level.strip().lower() or LEVEL_DEFAULT


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = bool(enabled)


def log(message: str, level: str = LEVEL_DEFAULT, indent: int = 0) -> None:
    prefix = " " * max(indent, 0)
    normalized = _normalize_level(level)
    # Batch workers log from several threads.
    with _lock:
        print(f"{prefix}[{normalized}] {message}")


def log_debug(message: str, indent: int = 0) -> None:
    if _verbose:
        log(message, "debug", indent)


def log_info(message: str, indent: int = 0) -> None:
    log(message, "info", indent)


def log_warn(message: str, indent: int = 0) -> None:
    log(message, "warn", indent)


def log_error(message: str, indent: int = 0) -> None:
    log(message, "error", indent)


def log_conflict(message: str, indent: int = 0) -> None:
    log(message, "conflict", indent)


def log_ok(message: str, indent: int = 0) -> None:
    log(message, "ok", indent)


def log_progress(done: int, total: int, label: str, indent: int = 2) -> None:
    log(f"{done}/{total} {label}", "progress", indent)
