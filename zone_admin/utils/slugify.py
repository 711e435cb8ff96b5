"""
Slug helpers used for production slugs and provider stable keys.
"""

from __future__ import annotations

import re
import unicodedata

# Letters that do not decompose under NFD.
_TRANSLITERATIONS = str.maketrans({"æ": "ae", "ø": "o", "å": "a", "ß": "ss", "đ": "d", "ł": "l"})
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(value: str | None) -> str:
    """Lowercase ASCII slug: ``"Grünerløkka Øst"`` -> ``"grunerlokka-ost"``."""
    if not value:
        return ""
    lowered = value.strip().lower().translate(_TRANSLITERATIONS)
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub("-", stripped).strip("-")


def city_key(city_name: str) -> str:
    return slugify(city_name)


def district_key(city_name: str, district_name: str) -> str:
    return f"{city_key(city_name)}_{slugify(district_name)}"
