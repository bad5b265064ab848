"""RAG (Retrieval-Augmented Generation) core for threat-modeling references.

Provides recursive chunking, a DuckDB document store with atomic replace,
HNSW-backed similarity search with a brute-force fallback, and context
assembly for report generation.
"""
