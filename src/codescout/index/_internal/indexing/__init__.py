"""Lexical and vector indexes over persisted chunks."""

from codescout.index._internal.indexing.lexical import LexicalIndex
from codescout.index._internal.indexing.terms import extract_terms, query_terms, word_split
from codescout.index._internal.indexing.vector import EmbeddingVector, VectorIndex, cosine_similarity

__all__ = [
    "EmbeddingVector",
    "LexicalIndex",
    "VectorIndex",
    "cosine_similarity",
    "extract_terms",
    "query_terms",
    "word_split",
]
