"""Composition root for the RAG engine.

``KnowledgeBase`` owns the store, embedding client, extractor, object storage,
ingest pipeline and retriever, and exposes the operations the rest of the
application depends on.
"""
from typing import Any, Dict, List, Optional

import structlog

from clinrag import config
from clinrag.db import Document, DocumentPage, DocumentStore, require_tenant_id
from clinrag.embedding_client import EmbeddingClient
from clinrag.errors import DocumentNotFound
from clinrag.rag.extract import OcrClient, TextExtractor
from clinrag.rag.ingest import IngestPipeline
from clinrag.rag.retriever import Retriever, SearchResult
from clinrag.storage import LocalObjectStorage

logger = structlog.get_logger()


class KnowledgeBase:
    """Tenant-scoped document knowledge base."""

    def __init__(
        self,
        store: DocumentStore,
        embedder: EmbeddingClient,
        extractor: Optional[TextExtractor] = None,
        storage: Optional[LocalObjectStorage] = None,
        ingest_timeout: float = None,
    ):
        self.store = store
        self.embedder = embedder
        self.storage = storage or LocalObjectStorage()
        self.pipeline = IngestPipeline(
            store=store,
            embedder=embedder,
            extractor=extractor,
            storage=self.storage,
            ingest_timeout=ingest_timeout,
        )
        self.retriever = Retriever(source=store, embedder=embedder)

    @classmethod
    def from_config(cls) -> "KnowledgeBase":
        """Build a knowledge base from environment configuration."""
        ocr_client = OcrClient(config.OCR_SERVICE_URL) if config.OCR_SERVICE_URL else None
        return cls(
            store=DocumentStore(config.DB_PATH),
            embedder=EmbeddingClient(),
            extractor=TextExtractor(ocr_client=ocr_client),
            storage=LocalObjectStorage(config.UPLOADS_DIR),
        )

    async def open(self) -> None:
        await self.store.open()
        logger.info(
            "knowledge_base_opened",
            embedding_provider=self.embedder.provider,
            embedding_model=self.embedder.model,
        )

    async def close(self) -> None:
        await self.store.close()

    async def __aenter__(self) -> "KnowledgeBase":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def ingest_document(
        self,
        file_bytes: bytes,
        file_name: str,
        mime_type: str,
        category: str,
        tenant_id: str,
        uploader_id: str,
    ) -> str:
        return await self.pipeline.ingest_document(
            file_bytes, file_name, mime_type, category, tenant_id, uploader_id
        )

    async def get_document(self, document_id: str, tenant_id: str) -> Document:
        """Fetch a document the caller expects to exist.

        Raises:
            DocumentNotFound: If it is missing or not visible to the tenant
        """
        document = await self.store.get_document(document_id, tenant_id)
        if document is None:
            raise DocumentNotFound(f"Document not found: {document_id}")
        return document

    async def delete_document(self, document_id: str, tenant_id: str) -> bool:
        """Delete a document, its chunks and its stored file.

        Returns:
            False if the tenant owns no such document
        """
        require_tenant_id(tenant_id)
        document = await self.store.get_document(document_id, tenant_id)
        if document is None or document.tenant_id != tenant_id:
            return False

        deleted = await self.store.delete_document(document_id, tenant_id)
        if deleted:
            try:
                await self.storage.delete_object(document.file_key)
            except OSError as e:
                # Orphaned raw file only; chunks and metadata are gone
                logger.warning(
                    "stored_file_delete_failed",
                    document_id=document_id,
                    file_key=document.file_key,
                    error=str(e),
                )
        return deleted

    async def list_documents(
        self,
        tenant_id: str,
        category: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> DocumentPage:
        return await self.store.list_documents(
            tenant_id, category=category, status=status, page=page, page_size=page_size
        )

    async def reprocess_document(self, document_id: str, tenant_id: str) -> Document:
        return await self.pipeline.reprocess_document(document_id, tenant_id)

    async def search(
        self,
        query: str,
        tenant_id: str,
        category: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        return await self.retriever.search(query, tenant_id, category, limit, threshold)

    async def get_stats(self, tenant_id: str) -> Dict[str, Any]:
        return await self.store.get_stats(tenant_id)
