"""Keyword normalization for filename matching."""

import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")


def normalize(text: str, *, strict: bool = False) -> str:
    """Lower-case and strip diacritics.

    With ``strict=True`` every character that is not a letter, digit, or
    space is also removed (runs of whitespace collapse to one space).
    Idempotent for both variants and total: ``None`` or ``""`` give ``""``.
    """
    decomposed = unicodedata.normalize("NFD", (text or "").lower())
    folded = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    if strict:
        folded = "".join(ch for ch in folded if ch.isalnum() or ch.isspace())
        folded = _WHITESPACE.sub(" ", folded)
    return folded


def compact(text: str) -> str:
    """Strict normalization without spaces, for substring tests."""
    return normalize(text, strict=True).replace(" ", "")
