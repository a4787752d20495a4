"""
Text Processing Utilities

Normalization and fuzzy scoring for entity names and proposition texts.
"""

from __future__ import annotations

import re
import unicodedata

from rapidfuzz import fuzz

_LEADING_ARTICLES = re.compile(r"^(the|a|an)\s+")
_POSSESSIVE = re.compile(r"(?<=\w)['’]s?\b")
_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def strip_diacritics(text: str) -> str:
    """'Dvořák' -> 'Dvorak'"""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_name(name: str) -> str:
    """
    Normalize an entity name for comparison.

    Case, diacritic and punctuation insensitive; drops possessives and a
    leading article.

    Args:
        name: e.g., "The Brahms' Violin Concerto"

    Returns:
        Normalized form e.g., "brahms violin concerto"
    """
    text = strip_diacritics(name).lower().strip()
    text = _POSSESSIVE.sub("", text)
    text = _NON_WORD.sub(" ", text)
    text = _WHITESPACE.sub(" ", text).strip()
    return _LEADING_ARTICLES.sub("", text)


def normalize_text(text: str) -> str:
    """Normalize a proposition text for identical-statement detection."""
    text = unicodedata.normalize("NFKC", text).lower()
    text = _NON_WORD.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def name_similarity(a: str, b: str) -> float:
    """
    Fuzzy similarity of two names on a 0-100 scale.

    Takes the better of plain ratio and token-set ratio, so "Brahms" scores
    100 against "Johannes Brahms".
    """
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return 0.0
    return max(fuzz.ratio(na, nb), fuzz.token_set_ratio(na, nb))


def text_similarity(a: str, b: str) -> float:
    """Fuzzy similarity of two statements on a 0-1 scale."""
    return fuzz.token_sort_ratio(normalize_text(a), normalize_text(b)) / 100.0


def escape_sql_string(value: str) -> str:
    """Escape single quotes for SQL WHERE clauses."""
    return value.replace("'", "''")
