from __future__ import annotations

import re

NEST_SEPARATOR = "//"
WHITESPACE_PATTERN = re.compile(r"\s+")
BACKSLASH_PATTERN = re.compile(r"\\+")
VARIANT_ROOTS = {"content/": "", "aoc/": "Aoc/0010/"}


def normalize_name(raw: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", raw).strip().lower()


def normalize_path(raw: str) -> str:
    """Forward slashes, no leading slash, no empty or ``.`` segments."""

    path = BACKSLASH_PATTERN.sub("/", raw.strip())
    outer = []
    for level in path.split(NEST_SEPARATOR):
        parts = [part for part in level.split("/") if part and part != "."]
        outer.append("/".join(parts))
    return NEST_SEPARATOR.join(outer)


def join_virtual_path(*levels: str) -> str:
    return NEST_SEPARATOR.join(level for level in levels if level)


def top_level_file(path: str) -> str:
    return path.split(NEST_SEPARATOR, 1)[0]


def canonical_name(path: str) -> str:
    """Name the runtime uses for a leaf: its innermost path, without the variant root."""

    if NEST_SEPARATOR in path:
        return path.rsplit(NEST_SEPARATOR, 1)[-1]
    for prefix, replacement in VARIANT_ROOTS.items():
        if path.startswith(prefix):
            return replacement + path[len(prefix):]
    return path
