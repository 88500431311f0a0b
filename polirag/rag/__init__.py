"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Word-window chunking with overlap
- Embedding generation behind a model backend
- Vector storage with snapshot persistence (linear scan or FAISS HNSW)
- Semantic retrieval
- Sync orchestration from an ingestion source
"""
