"""
Text utilities: fuzzy name similarity and field-text heuristics.
"""

import re

from rapidfuzz.distance import Levenshtein

# Cells and values that only mark where to write
PLACEHOLDER_RE = re.compile(r'^[\s_\-–—.:/|]*$')
PLACEHOLDER_WORDS = {"n/a", "na", "none", "-", "--"}

_SENTENCE_END_RE = re.compile(r'[.!?;]\s')


def normalize_name(text: str) -> str:
    """Lowercase and collapse whitespace for name comparisons."""
    if not text:
        return ""
    return " ".join(text.lower().split())


def name_similarity(a: str, b: str) -> float:
    """
    Similarity of two field names in [0.0, 1.0].

    1.0 for an exact (case/space-insensitive) match, 0.8 when one name
    contains the other, otherwise ``1 - normalized Levenshtein distance``.
    """
    s1 = normalize_name(a)
    s2 = normalize_name(b)
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    if s1 in s2 or s2 in s1:
        return 0.8

    return 1.0 - Levenshtein.normalized_distance(s1, s2)


def fuzzy_name_match(name: str, other: str) -> bool:
    """Exact match or substring containment in either direction."""
    n1 = normalize_name(name)
    n2 = normalize_name(other)
    if not n1 or not n2:
        return False
    return n1 == n2 or n1 in n2 or n2 in n1


def is_placeholder(text: str) -> bool:
    """True for blank cells and fill-in marks (underscores, dashes, "n/a")."""
    if text is None:
        return True
    stripped = text.strip()
    if PLACEHOLDER_RE.match(stripped):
        return True
    return stripped.lower() in PLACEHOLDER_WORDS


def alpha_count(text: str) -> int:
    return sum(1 for c in text if c.isalpha())


def is_numeric_only(text: str) -> bool:
    """Digits plus punctuation/space only, e.g. "12", "3.", "(4)"."""
    stripped = re.sub(r'[\s\W_]', '', text)
    return bool(stripped) and stripped.isdigit()


def looks_like_prose(text: str, min_words: int = 6) -> bool:
    """
    Heuristic for running text (instructions, policy language).

    Prose has several words, mostly lowercase, or contains a sentence break.
    """
    if not text:
        return False
    words = text.split()
    if len(words) < min_words:
        return False
    if _SENTENCE_END_RE.search(text):
        return True
    lower_words = sum(1 for w in words if w[:1].islower())
    return lower_words / len(words) >= 0.6
