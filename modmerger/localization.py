from __future__ import annotations

import re
from typing import Iterable

# Region+language codes used by the game's message archives.
LANGUAGES = (
    "USen",
    "USes",
    "USfr",
    "EUen",
    "EUde",
    "EUes",
    "EUfr",
    "EUit",
    "EUnl",
    "EUru",
    "JPja",
    "KRko",
    "CNzh",
    "TWzh",
)
DEFAULT_LANGUAGE = "USen"

# Language codes appear after an underscore, e.g. Bootup_USen.pack or Msg_USen.product.
LANGUAGE_PATTERN = re.compile(r"(?<=_)(" + "|".join(LANGUAGES) + r")(?=[._/]|$)")


def is_language(code: str) -> bool:
    return code in LANGUAGES


def language_from_path(path: str) -> str | None:
    match = LANGUAGE_PATTERN.search(path)
    if not match:
        return None
    return match.group(1)


def localize_path(path: str, language: str) -> str:
    """Rewrite every language marker in ``path`` to ``language``."""

    return LANGUAGE_PATTERN.sub(language, path)


def pick_language(available: Iterable[str], wanted: str, fallback: str = DEFAULT_LANGUAGE) -> str | None:
    """Choose the single language a mod contributes for ``wanted``.

    The wanted language is used when the mod ships it; otherwise the mod's
    designated fallback. Never returns any other language.
    """

    languages = set(available)
    if wanted in languages:
        return wanted
    if fallback in languages:
        return fallback
    return None
