"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Text extraction (native, markdown and OCR)
- Document chunking with overlap
- Cosine similarity ranking
- Ingestion orchestration
- Semantic retrieval
"""
