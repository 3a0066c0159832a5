"""
Hybrid retrieval and ranking core.

Merges vector-similarity and keyword-match result sets into one ranked list,
applies quality-aware filtering, resolves query intent and document scope, and
produces the embeddings that drive vector search.
"""

__version__ = "0.1.0"
