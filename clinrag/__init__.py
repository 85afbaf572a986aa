"""Multi-tenant retrieval-augmented knowledge base for clinical documents."""
