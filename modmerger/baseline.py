from __future__ import annotations

import threading
from collections import OrderedDict
from pathlib import Path
from typing import List

from .codec import DecomposedContainer, decompose
from .localization import DEFAULT_LANGUAGE, language_from_path, localize_path
from .models import BaselineConfig, Variant, split_variant_key
from .text_utils import top_level_file


class Baseline:
    """Read-only view of the unmodified game files.

    Content lookups prefer the update directory over the base directory;
    DLC files live in their own namespace. Decomposed containers are kept in
    a small LRU so merging many leaves of one archive reads it once.
    """

    CACHE_SIZE = 8

    def __init__(self, config: BaselineConfig) -> None:
        self.config = config
        self._decomposed: "OrderedDict[str, DecomposedContainer]" = OrderedDict()
        self._lock = threading.Lock()

    def _roots(self, variant: Variant) -> List[Path]:
        if variant is Variant.AOC:
            return [self.config.dlc] if self.config.dlc else []
        roots = [self.config.update] if self.config.update else []
        roots.append(self.config.base)
        return roots

    def file_path(self, key: str) -> Path | None:
        variant, rel = split_variant_key(top_level_file(key))
        for root in self._roots(variant):
            candidate = root / rel
            if candidate.is_file():
                return candidate
        return None

    def read_file(self, key: str) -> bytes | None:
        path = self.file_path(key)
        return path.read_bytes() if path else None

    def decomposed(self, key: str) -> DecomposedContainer | None:
        top = top_level_file(key)
        with self._lock:
            cached = self._decomposed.get(top)
            if cached is not None:
                self._decomposed.move_to_end(top)
                return cached
        raw = self.read_file(top)
        if raw is None:
            return None
        result = decompose(raw, path=top)
        with self._lock:
            self._decomposed[top] = result
            while len(self._decomposed) > self.CACHE_SIZE:
                self._decomposed.popitem(last=False)
        return result

    def read(self, key: str) -> bytes | None:
        """Bytes of a leaf; nested and compressed leaves go through the container codec."""

        container = self.decomposed(key)
        if container is None:
            return None
        return container.get(key)

    def read_localized(self, key: str) -> bytes | None:
        """Like :meth:`read`, falling back to the default language's copy."""

        data = self.read(key)
        if data is None and language_from_path(key):
            data = self.read(localize_path(key, DEFAULT_LANGUAGE))
        return data
