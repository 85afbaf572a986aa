"""Ingest pipeline for uploaded clinical and reference documents.

Orchestrates:
- Upload validation and raw object storage
- Text extraction (with OCR fallback)
- Text chunking
- Embedding generation
- Atomic chunk persistence and status transitions

Per document: pending -> processing -> completed | error, and
error -> pending for a manual retry. A failure always records the error on
the document before it propagates.
"""
import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

import structlog

from clinrag import config
from clinrag.db import (
    Document,
    DocumentStatus,
    DocumentStore,
    NewChunk,
    ProcessingMetadata,
    hash_content,
    require_tenant_id,
)
from clinrag.embedding_client import EmbeddingClient
from clinrag.errors import (
    DuplicateProcessing,
    ExtractionFailed,
    FileTooLarge,
    IngestionFailed,
    InvalidParameter,
    InvalidStatusTransition,
    RAGError,
    UnsupportedMediaType,
)
from clinrag.rag.chunker import TextChunk, chunk_text
from clinrag.rag.extract import ExtractedText, TextExtractor
from clinrag.rag.md_parser import MarkdownParser
from clinrag.storage import LocalObjectStorage, safe_file_name

logger = structlog.get_logger()

MIME_ALIASES = {
    "text/x-markdown": "text/markdown",
    "image/jpg": "image/jpeg",
}


def normalize_mime_type(mime_type: str) -> str:
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    return MIME_ALIASES.get(base, base)


class IngestPipeline:
    """Pipeline for ingesting documents into the RAG store."""

    def __init__(
        self,
        store: DocumentStore,
        embedder: EmbeddingClient,
        extractor: Optional[TextExtractor] = None,
        storage: Optional[LocalObjectStorage] = None,
        ingest_timeout: float = None,
        max_file_size: int = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            store: Document store (already opened by the caller)
            embedder: Embedding client
            extractor: Text extractor (native only when not provided)
            storage: Raw object storage (local filesystem when not provided)
            ingest_timeout: Ceiling in seconds for one document's processing
            max_file_size: Largest accepted upload in bytes
        """
        self.store = store
        self.embedder = embedder
        self.extractor = extractor or TextExtractor()
        self.storage = storage or LocalObjectStorage()
        self.ingest_timeout = ingest_timeout or config.INGEST_TIMEOUT
        self.max_file_size = max_file_size or config.MAX_FILE_SIZE
        self.markdown_parser = MarkdownParser()

    def validate_upload(
        self,
        file_bytes: bytes,
        file_name: str,
        mime_type: str,
        category: str,
        tenant_id: str,
        uploader_id: str,
    ) -> str:
        """Reject bad uploads before any external call.

        Returns:
            The normalized media type
        """
        require_tenant_id(tenant_id)

        if not isinstance(uploader_id, str) or not uploader_id.strip():
            raise InvalidParameter("uploader_id is required")
        if not isinstance(file_name, str) or not file_name.strip():
            raise InvalidParameter("file_name is required")
        if category not in config.DOCUMENT_CATEGORIES:
            raise InvalidParameter(
                f"Unknown category {category!r}; expected one of "
                f"{', '.join(config.DOCUMENT_CATEGORIES)}"
            )

        normalized = normalize_mime_type(mime_type)
        if normalized not in config.ALLOWED_MIME_TYPES:
            raise UnsupportedMediaType(
                f"Unsupported media type {mime_type!r}. Use PDF, DOC, DOCX, TXT, MD or an image"
            )

        if not file_bytes:
            raise InvalidParameter("Uploaded file is empty")
        if len(file_bytes) > self.max_file_size:
            raise FileTooLarge(
                f"File is {len(file_bytes)} bytes; maximum is {self.max_file_size}"
            )

        return normalized

    async def ingest_document(
        self,
        file_bytes: bytes,
        file_name: str,
        mime_type: str,
        category: str,
        tenant_id: str,
        uploader_id: str,
    ) -> str:
        """Store, extract, chunk, embed and persist one uploaded file.

        Returns:
            The new document id

        Raises:
            InvalidParameter, UnsupportedMediaType, FileTooLarge: Bad upload
            DuplicateProcessing: The same file is already being processed
            IngestionFailed: Processing failed; the document is in ``error``
        """
        mime_type = self.validate_upload(
            file_bytes, file_name, mime_type, category, tenant_id, uploader_id
        )

        stored_name = f"{int(time.time() * 1000)}-{safe_file_name(file_name)}"
        key = f"rag-documents/{tenant_id}/{stored_name}"
        try:
            stored = await self.storage.put_object(file_bytes, key)
        except OSError as e:
            logger.error("object_store_failed", key=key, error=str(e))
            raise IngestionFailed(f"Could not store uploaded file: {e}") from e

        document_id = await self.store.create_document(
            tenant_id=tenant_id,
            uploader_id=uploader_id,
            category=category,
            file_name=stored_name,
            original_file_name=file_name,
            file_size=len(file_bytes),
            mime_type=mime_type,
            file_key=stored.key,
            file_url=stored.url,
            content_hash=hash_content(file_bytes),
        )

        try:
            await self.process_document(document_id, tenant_id, file_bytes=file_bytes)
        except DuplicateProcessing:
            # Never claimed; drop the record and the stored copy
            await self.store.delete_document(document_id, tenant_id)
            await self.storage.delete_object(stored.key)
            raise

        return document_id

    async def process_document(
        self,
        document_id: str,
        tenant_id: str,
        file_bytes: Optional[bytes] = None,
    ) -> Document:
        """Run a pending document through extraction, chunking and embedding.

        Args:
            document_id: Document to process
            tenant_id: Owning tenant
            file_bytes: Raw file, if already in memory; otherwise retained
                text or the stored object is used

        Returns:
            The completed document
        """
        started = time.monotonic()
        document = await self.store.update_status(
            document_id, tenant_id, DocumentStatus.PROCESSING
        )

        logger.info(
            "document_processing_started",
            document_id=document_id,
            tenant_id=tenant_id,
            mime_type=document.mime_type,
        )

        deadline = started + self.ingest_timeout
        try:
            new_chunks, metadata = await asyncio.wait_for(
                self._prepare(document, file_bytes, started),
                timeout=self.ingest_timeout,
            )
            if time.monotonic() >= deadline:
                raise asyncio.TimeoutError()
            # A started write runs to completion even if the caller goes away
            completed = await asyncio.shield(
                self.store.append_chunks(
                    document.id, document.tenant_id, new_chunks, metadata
                )
            )
        except asyncio.TimeoutError:
            message = f"Ingestion timed out after {self.ingest_timeout:g}s"
            await self._mark_failed(document, message, started)
            raise IngestionFailed(message, document_id=document_id, cause_kind="timeout")
        except RAGError as e:
            await self._mark_failed(document, e.message, started)
            raise IngestionFailed(e.message, document_id=document_id, cause_kind=e.kind) from e
        except Exception as e:
            await self._mark_failed(document, f"Unexpected error: {e}", started)
            raise IngestionFailed(
                f"Unexpected error: {e}", document_id=document_id, cause_kind="internal"
            ) from e

        logger.info(
            "document_ingested",
            document_id=document_id,
            tenant_id=tenant_id,
            chunks_created=completed.processing.total_chunks,
            processing_time_ms=completed.processing.processing_time_ms,
        )
        return completed

    async def reprocess_document(self, document_id: str, tenant_id: str) -> Document:
        """Drop a document's chunks and index it again.

        Works for completed documents (after a chunking or embedding model
        change) and for failed ones (manual retry). Retained extracted text is
        reused; the stored file is re-extracted when none was kept.
        """
        await self.store.reset_for_reprocessing(document_id, tenant_id)
        return await self.process_document(document_id, tenant_id)

    async def reap_stale_documents(
        self, tenant_id: str, stale_after: float = None
    ) -> List[str]:
        """Fail documents stuck in ``processing`` past the staleness threshold.

        Returns:
            Ids of the documents moved to ``error``
        """
        stale_after = stale_after or config.STALE_PROCESSING_SECONDS
        reaped = []

        for document in await self.store.find_stale_processing(tenant_id, stale_after):
            logger.warning(
                "stale_processing_document_detected",
                document_id=document.id,
                tenant_id=tenant_id,
                processing_started_at=document.processing_started_at,
            )
            try:
                await self.store.update_status(
                    document.id,
                    tenant_id,
                    DocumentStatus.ERROR,
                    ProcessingMetadata(
                        error_message=f"Processing stalled for more than {stale_after:g}s"
                    ),
                )
            except InvalidStatusTransition:
                # Finished while we were looking
                continue
            reaped.append(document.id)

        return reaped

    async def _prepare(
        self, document: Document, file_bytes: Optional[bytes], started: float
    ) -> Tuple[List[NewChunk], ProcessingMetadata]:
        extracted = await self._load_text(document, file_bytes)

        chunk_size, overlap = await self.store.get_chunking_config(document.tenant_id)
        chunks = chunk_text(extracted.text, chunk_size, overlap)
        if not chunks:
            raise ExtractionFailed("Document contains no text to index")

        embeddings = await self.embedder.embed_batch([c.content for c in chunks])

        new_chunks = [
            NewChunk(
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                embedding=embedding,
                metadata=self._chunk_metadata(extracted, chunk),
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

        metadata = ProcessingMetadata(
            total_chunks=len(new_chunks),
            average_chunk_size=round(sum(len(c.content) for c in chunks) / len(chunks)),
            embedding_model=self.embedder.model,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )
        return new_chunks, metadata

    async def _load_text(
        self, document: Document, file_bytes: Optional[bytes]
    ) -> ExtractedText:
        if file_bytes is None and document.has_extracted_text:
            text = await self.store.get_extracted_text(document.id, document.tenant_id)
            if text:
                logger.debug("using_retained_text", document_id=document.id)
                details = await self.store.get_extraction_details(
                    document.id, document.tenant_id
                )
                retained = ExtractedText(
                    text=text,
                    method="retained",
                    page_offsets=details.get("page_offsets", []),
                    metadata=details.get("metadata", {}),
                    confidence=details.get("confidence"),
                )
                if document.mime_type == "text/markdown":
                    # Headings are not kept; recompute them from the text
                    retained.headings = self.markdown_parser.parse(text).headings
                return retained

        if file_bytes is None:
            file_bytes = await self.storage.get_object(document.file_key)

        extracted = await self.extractor.extract(file_bytes, document.mime_type)
        await self.store.save_extracted_text(
            document.id,
            document.tenant_id,
            extracted.text,
            details={
                "metadata": extracted.metadata,
                "page_offsets": extracted.page_offsets,
                "confidence": extracted.confidence,
            },
        )
        return extracted

    def _chunk_metadata(self, extracted: ExtractedText, chunk: TextChunk) -> Dict[str, Any]:
        metadata: Dict[str, Any] = dict(extracted.metadata)
        metadata.update(
            {
                "start_offset": chunk.char_start,
                "end_offset": chunk.char_end,
                "chunk_size": len(chunk.content),
                "extraction_method": extracted.method,
            }
        )

        page = extracted.page_number(chunk.char_start)
        if page is not None:
            metadata["page_number"] = page

        if extracted.headings:
            heading_context = self.markdown_parser.get_heading_context(
                extracted.headings, chunk.char_start
            )
            if heading_context:
                metadata["heading_context"] = heading_context

        if extracted.confidence is not None:
            metadata["ocr_confidence"] = extracted.confidence

        return metadata

    async def _mark_failed(self, document: Document, message: str, started: float) -> None:
        logger.error(
            "document_processing_failed",
            document_id=document.id,
            tenant_id=document.tenant_id,
            error=message,
        )
        try:
            await self.store.update_status(
                document.id,
                document.tenant_id,
                DocumentStatus.ERROR,
                ProcessingMetadata(
                    error_message=message,
                    embedding_model=self.embedder.model,
                    processing_time_ms=int((time.monotonic() - started) * 1000),
                ),
            )
        except RAGError as e:
            logger.error(
                "document_error_status_not_recorded",
                document_id=document.id,
                error=e.message,
            )
