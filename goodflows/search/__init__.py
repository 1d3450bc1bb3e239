"""goodflows.search — Token-overlap similarity shared by findings and patterns."""

from goodflows.search.similarity import jaccard, tokenize

__all__ = ["jaccard", "tokenize"]
