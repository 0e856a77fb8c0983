"""Identifier-aware term extraction for the lexical index.

Each identifier contributes its whole lowercased form and, when it is a
compound (camelCase, PascalCase, snake_case), each word inside it:
``getUserById`` gives ``getuserbyid``, ``get``, ``user``, ``id``
(``by`` is a stopword).
"""

from __future__ import annotations

import re
from collections import Counter

# Word split regex: camelCase / PascalCase / snake_case → words
_CAMEL_SPLIT = re.compile(r"[A-Z]?[a-z]+|[A-Z]+(?=[A-Z][a-z]|\d|\b)|[0-9]+")
_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

MIN_TERM_LENGTH = 2
MAX_TERM_LENGTH = 64

STOPWORDS: frozenset[str] = frozenset(
    (
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has", "have",
        "in", "is", "it", "its", "of", "on", "or", "that", "the", "this", "to", "was",
        "were", "will", "with", "how", "what", "where", "which", "who", "why", "do",
        "does", "can", "me", "my", "we", "you", "i",
    )
)


def word_split(name: str) -> list[str]:
    """Split an identifier into lowercase natural words.

    Example: ``getUserById`` → ``["get", "user", "by", "id"]``
    """
    words: list[str] = []
    for part in name.split("_"):
        if not part:
            continue
        camel = _CAMEL_SPLIT.findall(part)
        if camel:
            words.extend(w.lower() for w in camel)
        else:
            words.append(part.lower())
    return words


def _keep(term: str) -> bool:
    return MIN_TERM_LENGTH <= len(term) <= MAX_TERM_LENGTH and term not in STOPWORDS


def extract_terms(text: str) -> list[str]:
    """All index terms in *text*, in order, with repeats."""
    terms: list[str] = []
    for ident in _IDENTIFIER.findall(text):
        whole = ident.strip("_").lower()
        if _keep(whole):
            terms.append(whole)
        parts = word_split(ident)
        if len(parts) > 1:
            terms.extend(p for p in parts if _keep(p) and p != whole)
    return terms


def term_frequencies(text: str) -> Counter[str]:
    return Counter(extract_terms(text))


def query_terms(query: str) -> list[str]:
    """Distinct terms of a query, in first-seen order."""
    seen: dict[str, None] = {}
    for term in extract_terms(query):
        seen.setdefault(term, None)
    return list(seen)
