from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable


def normalize_text(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value or "").casefold()
    return re.sub(r"\s+", " ", normalized).strip()


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def normalize_terms(values: Iterable[str]) -> list[str]:
    """Strip search terms and drop blanks and case-insensitive repeats, keeping order."""
    seen: set[str] = set()
    terms: list[str] = []
    for value in values:
        term = re.sub(r"\s+", " ", value or "").strip()
        key = normalize_text(term)
        if not key or key in seen:
            continue
        seen.add(key)
        terms.append(term)
    return terms
