"""
vocabulary.py — Tag Vocabulary Builder
========================================
Key classes: Vocabulary
Key functions: normalize_term, build_vocabulary

PURPOSE:
    Maps every distinct tag term found across the candidate items to a
    contiguous output index.  The same mapping is used for label encoding,
    for the classifier's output layer, and (persisted as an ordered term
    list) for mapping predictions back to tag strings at inference time.

NOTES:
    - Terms are normalised (trimmed, lower-cased); empty strings are dropped.
    - Indices are assigned in sorted order, so the mapping does not depend on
      the order in which items or their tags arrive.
    - A Vocabulary is immutable once built.
"""

import json
import logging
from collections.abc import Iterable, Mapping

logger = logging.getLogger("tag-trainer")


def normalize_term(term) -> str:
    """Trim and lower-case a raw tag string ('' for None)."""
    if term is None:
        return ""
    return str(term).strip().lower()


class Vocabulary(Mapping):
    """Frozen term → index mapping with dense indices 0..n-1."""

    def __init__(self, terms: Iterable[str] = ()):
        ordered = sorted({normalize_term(t) for t in terms} - {""})
        self._terms = tuple(ordered)
        self._index = {term: i for i, term in enumerate(self._terms)}

    # ── Mapping interface ────────────────────────────────────

    def __getitem__(self, term: str) -> int:
        return self._index[term]

    def __iter__(self):
        return iter(self._terms)

    def __len__(self) -> int:
        return len(self._terms)

    def __repr__(self) -> str:
        return f"Vocabulary({len(self)} terms)"

    # ── lookups ──────────────────────────────────────────────

    @property
    def terms(self) -> list[str]:
        """Ordered term list; position == output index."""
        return list(self._terms)

    def index_of(self, raw_term) -> int | None:
        """Index of a raw (un-normalised) term, or None if unknown."""
        return self._index.get(normalize_term(raw_term))

    def term_at(self, index: int) -> str:
        return self._terms[index]

    # ── persistence ──────────────────────────────────────────

    def to_json(self) -> str:
        return json.dumps(self.terms, indent=2, ensure_ascii=False)

    @classmethod
    def from_terms(cls, terms: list[str]) -> "Vocabulary":
        """Rebuild from a persisted ordered list (must already be normalised and sorted)."""
        vocab = cls(terms)
        if vocab.terms != list(terms):
            raise ValueError("Persisted vocabulary is not a sorted list of normalised terms")
        return vocab

    def save(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            f.write(self.to_json())

    @classmethod
    def load(cls, path: str) -> "Vocabulary":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_terms(json.load(f))


def build_vocabulary(tag_sets: Iterable[Iterable[str]]) -> Vocabulary:
    """
    Build the vocabulary from an ordered collection of per-item tag sets.

    Args:
        tag_sets: One iterable of raw strings (categories + keywords) per item.

    Returns:
        Vocabulary with indices assigned in lexicographic order.
    """
    unique_terms = set()
    for tags in tag_sets:
        for term in tags:
            norm = normalize_term(term)
            if norm:
                unique_terms.add(norm)
    vocab = Vocabulary(unique_terms)
    logger.info(f"Vocabulary built: {len(vocab)} unique terms")
    return vocab


def vocabulary_from_mapping(mapping: Mapping[str, int]) -> Vocabulary:
    """Rebuild from a term → index dict, checking that indices are dense and sorted."""
    terms = [t for t, _ in sorted(mapping.items(), key=lambda kv: kv[1])]
    if [mapping[t] for t in terms] != list(range(len(terms))):
        raise ValueError("Vocabulary indices must be contiguous from 0")
    return Vocabulary.from_terms(terms)
