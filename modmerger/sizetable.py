"""Resource size table maintenance.

The runtime allocates a fixed buffer per resource, sized from the table the
game ships. A merged resource can outgrow that buffer, so every freshly
merged leaf is estimated and, when the estimate exceeds the recorded value,
an entry is written. Estimation never fails an install: anything that goes
wrong degrades to a conservative heuristic.
"""

from __future__ import annotations

import json
import struct
import zlib
from typing import Callable, Dict, Mapping

from . import codec
from .errors import ContainerError, SizingError
from .file_utils import read_json, write_json
from .formats import format_for_path
from .logging_utils import log_debug, log_warn
from .text_utils import canonical_name

SIZE_TABLE_PATH = "content/System/Resource/ResourceSizeTable.json"
ALIGNMENT = 32
STRUCTURED_OVERHEAD = 0x400
BINARY_OVERHEAD = 0x100
HEURISTIC_MULTIPLIER = 4


def _align(value: int) -> int:
    return (value + ALIGNMENT - 1) // ALIGNMENT * ALIGNMENT


def heuristic_size(data: bytes) -> int:
    return _align(max(len(data), 1) * HEURISTIC_MULTIPLIER)


def _estimate_structured(data: bytes) -> int:
    # Parsed documents keep a node table roughly the size of the text.
    return _align(len(data) * 2 + STRUCTURED_OVERHEAD)


def _estimate_pack(data: bytes) -> int:
    _, _, alignment, entries = codec.parse_pack(data)
    payload = sum(len(name) + len(body) + alignment for name, body in entries)
    return _align(codec.PACK_HEADER.size + payload + BINARY_OVERHEAD)


def _estimate_binary(data: bytes) -> int:
    return _align(len(data) + BINARY_OVERHEAD)


ESTIMATORS: Dict[str, Callable[[bytes], int]] = {
    "json": _estimate_structured,
    "yaml": _estimate_structured,
    "pack": _estimate_pack,
    "binary": _estimate_binary,
}


def estimate_size(path: str, data: bytes) -> int:
    """Estimated runtime buffer size for ``data``; never raises."""

    fmt = format_for_path(path)
    payload = data
    try:
        if codec.is_compressed(data):
            payload, _ = codec.decompress(data, path)
        estimator = ESTIMATORS.get(fmt)
        if estimator is None:
            raise SizingError(f"no size estimator for format {fmt}")
        return estimator(payload)
    except (ContainerError, SizingError, ValueError, struct.error, zlib.error) as exc:
        fallback = heuristic_size(data)
        log_warn(f"Size estimate for {path} failed ({exc}); using {fallback} bytes")
        return fallback


def load_baseline_table(raw: bytes | None) -> Dict[str, int]:
    if raw is None:
        return {}
    try:
        table = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        log_warn(f"Baseline size table is unreadable ({exc}); treating it as empty")
        return {}
    if not isinstance(table, dict):
        log_warn("Baseline size table is not a mapping; treating it as empty")
        return {}
    return {str(name): int(size) for name, size in table.items() if isinstance(size, int)}


class SizeTable:
    """Entries that differ from the baseline table, keyed by canonical name."""

    def __init__(self, baseline: Mapping[str, int], entries: Mapping[str, int] | None = None) -> None:
        self.baseline = dict(baseline)
        self.entries: Dict[str, int] = dict(entries or {})

    @classmethod
    def load(cls, baseline: Mapping[str, int], state_path) -> "SizeTable":
        return cls(baseline, read_json(state_path, default={}) or {})

    def save(self, state_path) -> None:
        write_json(state_path, self.entries)

    def __contains__(self, name: str) -> bool:
        return name in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def required(self, name: str) -> int | None:
        return self.entries.get(name, self.baseline.get(name))

    def update(self, path: str, data: bytes) -> bool:
        """Record the size needed by a freshly merged leaf. Returns True on change."""

        name = canonical_name(path)
        estimate = estimate_size(path, data)
        recorded = self.baseline.get(name)
        if recorded is not None and estimate <= recorded:
            return self.entries.pop(name, None) is not None
        if self.entries.get(name) == estimate:
            return False
        log_debug(f"Size table: {name} needs {estimate} bytes (baseline {recorded})")
        self.entries[name] = estimate
        return True

    def retire(self, path: str) -> bool:
        return self.entries.pop(canonical_name(path), None) is not None

    def clear(self) -> None:
        self.entries.clear()

    def to_bytes(self) -> bytes:
        merged = dict(self.baseline)
        merged.update(self.entries)
        return (json.dumps(merged, indent=2, sort_keys=True) + "\n").encode("utf-8")


__all__ = [
    "SIZE_TABLE_PATH",
    "SizeTable",
    "estimate_size",
    "heuristic_size",
    "load_baseline_table",
]
