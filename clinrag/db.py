"""Tenant-scoped document store backed by SQLite.

Stores:
- Document metadata and processing lifecycle
- Chunk text, embeddings and position metadata
- Per-tenant chunking settings

Every public operation is a coroutine that runs one sqlite call in a worker
thread. The lock only guards that single call and is never held while the
caller awaits anything else.
"""
import asyncio
import hashlib
import json
import re
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import structlog

from clinrag import config
from clinrag.errors import (
    DimensionMismatch,
    DocumentNotFound,
    DuplicateProcessing,
    InvalidParameter,
    InvalidStatusTransition,
    StoreWriteError,
)
from clinrag.rag.chunker import validate_chunking

logger = structlog.get_logger()

TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


# completed is only reachable through append_chunks
ALLOWED_TRANSITIONS = {
    DocumentStatus.PENDING: {DocumentStatus.PROCESSING},
    DocumentStatus.PROCESSING: {DocumentStatus.ERROR},
    DocumentStatus.ERROR: {DocumentStatus.PENDING},
    DocumentStatus.COMPLETED: set(),
}


def require_tenant_id(tenant_id: Any) -> str:
    """Validate a tenant id.

    Raises:
        InvalidParameter: If the id is missing or malformed
    """
    if not isinstance(tenant_id, str) or not TENANT_ID_PATTERN.match(tenant_id):
        raise InvalidParameter(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


def visible_tenants(tenant_id: str) -> Tuple[str, ...]:
    """Tenants whose documents ``tenant_id`` may read."""
    if tenant_id == config.GLOBAL_TENANT_ID:
        return (tenant_id,)
    return (tenant_id, config.GLOBAL_TENANT_ID)


def _parse_status(status: Union[str, DocumentStatus]) -> DocumentStatus:
    try:
        return DocumentStatus(status)
    except ValueError:
        raise InvalidParameter(f"Unknown document status: {status!r}") from None


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProcessingMetadata:
    total_chunks: Optional[int] = None
    average_chunk_size: Optional[int] = None
    embedding_model: Optional[str] = None
    processing_time_ms: Optional[int] = None
    error_message: Optional[str] = None


@dataclass
class Document:
    """One uploaded source file."""

    id: str
    tenant_id: str
    uploader_id: str
    category: str
    file_name: str
    original_file_name: str
    file_size: int
    mime_type: str
    file_key: str
    file_url: str
    content_hash: str
    status: DocumentStatus
    processing: ProcessingMetadata
    has_extracted_text: bool
    created_at: str
    updated_at: str
    processing_started_at: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.tenant_id == config.GLOBAL_TENANT_ID

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["is_global"] = self.is_global
        return data


@dataclass
class NewChunk:
    """A chunk ready to be persisted."""

    chunk_index: int
    content: str
    embedding: Sequence[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CandidateChunk:
    """A stored chunk as seen by the retrieval path."""

    chunk_id: int
    document_id: str
    tenant_id: str
    chunk_index: int
    content: str
    embedding: np.ndarray
    metadata: Dict[str, Any]
    file_name: str
    category: str


@dataclass
class DocumentPage:
    items: List[Document]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documents": [d.to_dict() for d in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "pages": self.pages,
        }


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        uploader_id TEXT NOT NULL,
        category TEXT NOT NULL,
        file_name TEXT NOT NULL,
        original_file_name TEXT NOT NULL,
        file_size INTEGER NOT NULL,
        mime_type TEXT NOT NULL,
        file_key TEXT NOT NULL,
        file_url TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        status TEXT NOT NULL,
        extracted_text TEXT,
        extraction_json TEXT,
        total_chunks INTEGER,
        average_chunk_size INTEGER,
        embedding_model TEXT,
        processing_time_ms INTEGER,
        error_message TEXT,
        processing_started_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chunks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        tenant_id TEXT NOT NULL,
        chunk_index INTEGER NOT NULL,
        content TEXT NOT NULL,
        embedding BLOB NOT NULL,
        dimension INTEGER NOT NULL,
        embedding_model TEXT NOT NULL,
        metadata_json TEXT,
        created_at TEXT NOT NULL,
        UNIQUE(document_id, chunk_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenant_settings (
        tenant_id TEXT PRIMARY KEY,
        chunk_size INTEGER NOT NULL,
        chunk_overlap INTEGER NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_tenant_status ON documents(tenant_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_documents_tenant_category ON documents(tenant_id, category)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id, chunk_index)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_model ON chunks(embedding_model)",
    # At most one in-flight run per (tenant, file name, content)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_documents_one_processing
    ON documents(tenant_id, original_file_name, content_hash)
    WHERE status = 'processing'
    """,
]

DOCUMENT_COLUMNS = """
    id, tenant_id, uploader_id, category, file_name, original_file_name,
    file_size, mime_type, file_key, file_url, content_hash, status,
    extracted_text IS NOT NULL AS has_extracted_text,
    total_chunks, average_chunk_size, embedding_model, processing_time_ms,
    error_message, processing_started_at, created_at, updated_at
"""


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        tenant_id=row["tenant_id"],
        uploader_id=row["uploader_id"],
        category=row["category"],
        file_name=row["file_name"],
        original_file_name=row["original_file_name"],
        file_size=row["file_size"],
        mime_type=row["mime_type"],
        file_key=row["file_key"],
        file_url=row["file_url"],
        content_hash=row["content_hash"],
        status=DocumentStatus(row["status"]),
        processing=ProcessingMetadata(
            total_chunks=row["total_chunks"],
            average_chunk_size=row["average_chunk_size"],
            embedding_model=row["embedding_model"],
            processing_time_ms=row["processing_time_ms"],
            error_message=row["error_message"],
        ),
        has_extracted_text=bool(row["has_extracted_text"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        processing_started_at=row["processing_started_at"],
    )


def hash_content(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class DocumentStore:
    """SQLite persistence for documents and chunks.

    Construct once in the composition root, ``await open()`` before use and
    ``await close()`` on shutdown. ``":memory:"`` gives a private in-memory
    database, which is what the tests use.
    """

    def __init__(self, db_path: Union[str, Path] = None):
        self.db_path = str(db_path or config.DB_PATH)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    # Lifecycle

    async def open(self) -> None:
        if self._conn is not None:
            return
        await asyncio.to_thread(self._open)

    def _open(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")

        try:
            with conn:
                for statement in SCHEMA:
                    conn.execute(statement)
        except sqlite3.Error as e:
            conn.close()
            logger.error("database_init_failed", error=str(e), db_path=self.db_path)
            raise

        self._conn = conn
        logger.info("database_initialized", db_path=self.db_path)

    async def close(self) -> None:
        if self._conn is None:
            return
        with self._lock:
            self._conn.close()
            self._conn = None
        logger.info("database_closed", db_path=self.db_path)

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def __aenter__(self) -> "DocumentStore":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _run(self, fn: Callable, *args):
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn: Callable, *args):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("DocumentStore is not open. Call open() first.")
            return fn(self._conn, *args)

    # Documents

    async def create_document(
        self,
        tenant_id: str,
        uploader_id: str,
        category: str,
        file_name: str,
        original_file_name: str,
        file_size: int,
        mime_type: str,
        file_key: str,
        file_url: str = "",
        content_hash: str = "",
    ) -> str:
        """Record a new document in ``pending`` status.

        Returns:
            The new document id
        """
        require_tenant_id(tenant_id)
        document_id = uuid.uuid4().hex
        now = _now().isoformat()

        def insert(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    """
                    INSERT INTO documents (
                        id, tenant_id, uploader_id, category, file_name,
                        original_file_name, file_size, mime_type, file_key,
                        file_url, content_hash, status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        document_id,
                        tenant_id,
                        uploader_id,
                        category,
                        file_name,
                        original_file_name,
                        file_size,
                        mime_type,
                        file_key,
                        file_url,
                        content_hash,
                        DocumentStatus.PENDING.value,
                        now,
                        now,
                    ),
                )

        try:
            await self._run(insert)
        except sqlite3.Error as e:
            logger.error("document_insert_failed", error=str(e), tenant_id=tenant_id)
            raise StoreWriteError(f"Failed to create document: {e}") from e

        logger.info(
            "document_created",
            document_id=document_id,
            tenant_id=tenant_id,
            category=category,
        )
        return document_id

    async def get_document(self, document_id: str, tenant_id: str) -> Optional[Document]:
        """Fetch a document the tenant can see (its own or global)."""
        tenants = visible_tenants(require_tenant_id(tenant_id))

        def select(conn: sqlite3.Connection) -> Optional[Document]:
            placeholders = ",".join("?" * len(tenants))
            row = conn.execute(
                f"SELECT {DOCUMENT_COLUMNS} FROM documents "
                f"WHERE id = ? AND tenant_id IN ({placeholders})",
                (document_id, *tenants),
            ).fetchone()
            return _row_to_document(row) if row else None

        return await self._run(select)

    async def update_status(
        self,
        document_id: str,
        tenant_id: str,
        status: Union[str, DocumentStatus],
        processing_metadata: Optional[ProcessingMetadata] = None,
    ) -> Document:
        """Move a document to a new status.

        Entering ``error`` also removes any chunks the document might hold.

        Raises:
            DocumentNotFound: If the tenant does not own the document
            InvalidStatusTransition: If the move is not allowed
            DuplicateProcessing: If the same upload is already processing
        """
        require_tenant_id(tenant_id)
        target = _parse_status(status)
        meta = processing_metadata or ProcessingMetadata()

        def update(conn: sqlite3.Connection) -> Document:
            with conn:
                row = conn.execute(
                    "SELECT status FROM documents WHERE id = ? AND tenant_id = ?",
                    (document_id, tenant_id),
                ).fetchone()
                if row is None:
                    raise DocumentNotFound(f"Document not found: {document_id}")

                current = DocumentStatus(row["status"])
                if target not in ALLOWED_TRANSITIONS[current]:
                    raise InvalidStatusTransition(
                        f"Cannot move document {document_id} from "
                        f"{current.value} to {target.value}"
                    )

                now = _now().isoformat()
                if target is DocumentStatus.PROCESSING:
                    conn.execute(
                        """
                        UPDATE documents
                        SET status = ?, processing_started_at = ?,
                            error_message = NULL, updated_at = ?
                        WHERE id = ?
                        """,
                        (target.value, now, now, document_id),
                    )
                elif target is DocumentStatus.ERROR:
                    conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
                    conn.execute(
                        """
                        UPDATE documents
                        SET status = ?, error_message = ?, processing_time_ms = ?,
                            embedding_model = COALESCE(?, embedding_model),
                            total_chunks = 0, average_chunk_size = NULL,
                            updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            target.value,
                            meta.error_message or "Unknown error",
                            meta.processing_time_ms,
                            meta.embedding_model,
                            now,
                            document_id,
                        ),
                    )
                else:
                    conn.execute(
                        """
                        UPDATE documents
                        SET status = ?, error_message = NULL,
                            processing_started_at = NULL, updated_at = ?
                        WHERE id = ?
                        """,
                        (target.value, now, document_id),
                    )

                return _row_to_document(
                    conn.execute(
                        f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE id = ?",
                        (document_id,),
                    ).fetchone()
                )

        try:
            document = await self._run(update)
        except sqlite3.IntegrityError as e:
            raise DuplicateProcessing(
                f"An identical upload is already being processed for tenant {tenant_id}"
            ) from e
        except sqlite3.Error as e:
            logger.error("status_update_failed", document_id=document_id, error=str(e))
            raise StoreWriteError(f"Failed to update document status: {e}") from e

        logger.info(
            "document_status_updated",
            document_id=document_id,
            tenant_id=tenant_id,
            status=target.value,
        )
        return document

    async def save_extracted_text(
        self,
        document_id: str,
        tenant_id: str,
        text: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Retain extracted text so the document can be re-chunked later.

        Args:
            document_id: Document the text belongs to
            tenant_id: Owning tenant
            text: Full extracted text
            details: What the extractor learned besides the text (document
                metadata, page offsets, OCR confidence)
        """
        details_json = json.dumps(details) if details else None
        require_tenant_id(tenant_id)

        def update(conn: sqlite3.Connection) -> int:
            with conn:
                return conn.execute(
                    """
                    UPDATE documents
                    SET extracted_text = ?, extraction_json = ?, updated_at = ?
                    WHERE id = ? AND tenant_id = ?
                    """,
                    (text, details_json, _now().isoformat(), document_id, tenant_id),
                ).rowcount

        try:
            updated = await self._run(update)
        except sqlite3.Error as e:
            raise StoreWriteError(f"Failed to save extracted text: {e}") from e

        if not updated:
            raise DocumentNotFound(f"Document not found: {document_id}")

    async def get_extracted_text(self, document_id: str, tenant_id: str) -> Optional[str]:
        require_tenant_id(tenant_id)

        def select(conn: sqlite3.Connection) -> Optional[str]:
            row = conn.execute(
                "SELECT extracted_text FROM documents WHERE id = ? AND tenant_id = ?",
                (document_id, tenant_id),
            ).fetchone()
            return row["extracted_text"] if row else None

        return await self._run(select)

    async def get_extraction_details(self, document_id: str, tenant_id: str) -> Dict[str, Any]:
        """Details saved alongside the retained text; empty when none were kept."""
        require_tenant_id(tenant_id)

        def select(conn: sqlite3.Connection) -> Optional[str]:
            row = conn.execute(
                "SELECT extraction_json FROM documents WHERE id = ? AND tenant_id = ?",
                (document_id, tenant_id),
            ).fetchone()
            return row["extraction_json"] if row else None

        details_json = await self._run(select)
        return json.loads(details_json) if details_json else {}

    async def delete_document(self, document_id: str, tenant_id: str) -> bool:
        """Delete a document and all of its chunks as one unit.

        Returns:
            False if the document does not exist or belongs to another tenant
        """
        require_tenant_id(tenant_id)

        def delete(conn: sqlite3.Connection) -> Tuple[int, int]:
            with conn:
                row = conn.execute(
                    "SELECT id FROM documents WHERE id = ? AND tenant_id = ?",
                    (document_id, tenant_id),
                ).fetchone()
                if row is None:
                    return 0, 0
                chunks = conn.execute(
                    "DELETE FROM chunks WHERE document_id = ?", (document_id,)
                ).rowcount
                docs = conn.execute(
                    "DELETE FROM documents WHERE id = ?", (document_id,)
                ).rowcount
                return docs, chunks

        try:
            deleted, chunk_count = await self._run(delete)
        except sqlite3.Error as e:
            logger.error("document_delete_failed", document_id=document_id, error=str(e))
            raise StoreWriteError(f"Failed to delete document: {e}") from e

        if deleted:
            logger.info(
                "document_deleted",
                document_id=document_id,
                tenant_id=tenant_id,
                chunks_deleted=chunk_count,
            )
        return bool(deleted)

    async def list_documents(
        self,
        tenant_id: str,
        category: Optional[str] = None,
        status: Optional[Union[str, DocumentStatus]] = None,
        page: int = 1,
        page_size: int = 20,
        include_global: bool = True,
    ) -> DocumentPage:
        """List documents visible to a tenant, newest first.

        Filters are combined with AND.
        """
        require_tenant_id(tenant_id)
        if page < 1:
            raise InvalidParameter(f"page must be >= 1, got {page}")
        if not 1 <= page_size <= 100:
            raise InvalidParameter(f"page_size must be between 1 and 100, got {page_size}")

        tenants = visible_tenants(tenant_id) if include_global else (tenant_id,)
        clauses = [f"tenant_id IN ({','.join('?' * len(tenants))})"]
        params: List[Any] = list(tenants)

        if category:
            clauses.append("category = ?")
            params.append(category)
        if status:
            clauses.append("status = ?")
            params.append(_parse_status(status).value)

        where = " AND ".join(clauses)

        def select(conn: sqlite3.Connection) -> DocumentPage:
            total = conn.execute(
                f"SELECT COUNT(*) FROM documents WHERE {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE {where} "
                f"ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
                (*params, page_size, (page - 1) * page_size),
            ).fetchall()
            return DocumentPage(
                items=[_row_to_document(r) for r in rows],
                total=total,
                page=page,
                page_size=page_size,
            )

        return await self._run(select)

    async def reset_for_reprocessing(self, document_id: str, tenant_id: str) -> Document:
        """Drop a document's chunks and send it back to ``pending``.

        Allowed from ``completed`` (re-chunking after a settings or model
        change) and ``error`` (manual retry).
        """
        require_tenant_id(tenant_id)

        def reset(conn: sqlite3.Connection) -> Tuple[Document, int]:
            with conn:
                row = conn.execute(
                    "SELECT status FROM documents WHERE id = ? AND tenant_id = ?",
                    (document_id, tenant_id),
                ).fetchone()
                if row is None:
                    raise DocumentNotFound(f"Document not found: {document_id}")

                current = DocumentStatus(row["status"])
                if current not in (DocumentStatus.COMPLETED, DocumentStatus.ERROR):
                    raise InvalidStatusTransition(
                        f"Cannot reprocess document {document_id} while {current.value}"
                    )

                removed = conn.execute(
                    "DELETE FROM chunks WHERE document_id = ?", (document_id,)
                ).rowcount
                conn.execute(
                    """
                    UPDATE documents
                    SET status = ?, total_chunks = NULL, average_chunk_size = NULL,
                        processing_time_ms = NULL, error_message = NULL,
                        processing_started_at = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    (DocumentStatus.PENDING.value, _now().isoformat(), document_id),
                )
                document = _row_to_document(
                    conn.execute(
                        f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE id = ?",
                        (document_id,),
                    ).fetchone()
                )
                return document, removed

        try:
            document, removed = await self._run(reset)
        except sqlite3.Error as e:
            raise StoreWriteError(f"Failed to reset document: {e}") from e

        logger.info(
            "document_reset_for_reprocessing",
            document_id=document_id,
            tenant_id=tenant_id,
            chunks_removed=removed,
        )
        return document

    async def find_stale_processing(
        self, tenant_id: str, older_than_seconds: float
    ) -> List[Document]:
        """Documents stuck in ``processing`` for longer than the threshold."""
        require_tenant_id(tenant_id)
        cutoff = (_now() - timedelta(seconds=older_than_seconds)).isoformat()

        def select(conn: sqlite3.Connection) -> List[Document]:
            rows = conn.execute(
                f"SELECT {DOCUMENT_COLUMNS} FROM documents "
                "WHERE tenant_id = ? AND status = ? AND processing_started_at < ?",
                (tenant_id, DocumentStatus.PROCESSING.value, cutoff),
            ).fetchall()
            return [_row_to_document(r) for r in rows]

        return await self._run(select)

    async def tenant_ids(self) -> List[str]:
        """All tenants that own at least one document (maintenance sweeps)."""

        def select(conn: sqlite3.Connection) -> List[str]:
            rows = conn.execute(
                "SELECT DISTINCT tenant_id FROM documents ORDER BY tenant_id"
            ).fetchall()
            return [r["tenant_id"] for r in rows]

        return await self._run(select)

    # Chunks

    def _insert_chunk(
        self,
        conn: sqlite3.Connection,
        document_id: str,
        tenant_id: str,
        embedding_model: str,
        chunk: NewChunk,
        created_at: str,
    ) -> None:
        vector = np.asarray(chunk.embedding, dtype=np.float32)
        conn.execute(
            """
            INSERT INTO chunks (
                document_id, tenant_id, chunk_index, content, embedding,
                dimension, embedding_model, metadata_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document_id,
                tenant_id,
                chunk.chunk_index,
                chunk.content,
                vector.tobytes(),
                int(vector.shape[0]),
                embedding_model,
                json.dumps(chunk.metadata) if chunk.metadata else None,
                created_at,
            ),
        )

    async def append_chunks(
        self,
        document_id: str,
        tenant_id: str,
        chunks: Sequence[NewChunk],
        processing_metadata: ProcessingMetadata,
    ) -> Document:
        """Persist every chunk and mark the document ``completed``.

        Runs as one transaction: on any failure nothing is written and the
        document stays in ``processing``.

        Raises:
            DocumentNotFound: If the tenant does not own the document
            InvalidStatusTransition: If the document is not processing
            DimensionMismatch: If embedding lengths disagree with each other
                or with stored chunks of the same model that share a
                candidate set with this tenant
            StoreWriteError: For empty or non-contiguous input and sqlite failures
        """
        require_tenant_id(tenant_id)
        model = processing_metadata.embedding_model
        if not model:
            raise StoreWriteError("processing_metadata.embedding_model is required")
        if not chunks:
            raise StoreWriteError(f"No chunks to append for document {document_id}")

        indices = sorted(c.chunk_index for c in chunks)
        if indices != list(range(len(chunks))):
            raise StoreWriteError(
                f"Chunk indices for document {document_id} are not contiguous from 0"
            )

        dimensions = {len(c.embedding) for c in chunks}
        if len(dimensions) != 1:
            raise DimensionMismatch(
                f"Chunks of document {document_id} have mixed embedding "
                f"dimensions: {sorted(dimensions)}"
            )
        dimension = dimensions.pop()

        # Global chunks join every tenant's candidate set
        if tenant_id == config.GLOBAL_TENANT_ID:
            scope_sql, scope_params = "", ()
        else:
            tenants = visible_tenants(tenant_id)
            scope_sql = f" AND tenant_id IN ({','.join('?' * len(tenants))})"
            scope_params = tenants

        def write(conn: sqlite3.Connection) -> Document:
            with conn:
                row = conn.execute(
                    "SELECT status FROM documents WHERE id = ? AND tenant_id = ?",
                    (document_id, tenant_id),
                ).fetchone()
                if row is None:
                    raise DocumentNotFound(f"Document not found: {document_id}")
                if row["status"] != DocumentStatus.PROCESSING.value:
                    raise InvalidStatusTransition(
                        f"Cannot complete document {document_id} from {row['status']}"
                    )

                existing = conn.execute(
                    f"SELECT dimension FROM chunks "
                    f"WHERE embedding_model = ? AND dimension != ?{scope_sql} LIMIT 1",
                    (model, dimension, *scope_params),
                ).fetchone()
                if existing is not None:
                    raise DimensionMismatch(
                        f"Model {model} produced {dimension}-dim embeddings but "
                        f"stored chunks have {existing['dimension']}"
                    )

                created_at = _now().isoformat()
                for chunk in sorted(chunks, key=lambda c: c.chunk_index):
                    self._insert_chunk(conn, document_id, tenant_id, model, chunk, created_at)

                conn.execute(
                    """
                    UPDATE documents
                    SET status = ?, total_chunks = ?, average_chunk_size = ?,
                        embedding_model = ?, processing_time_ms = ?,
                        error_message = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        DocumentStatus.COMPLETED.value,
                        processing_metadata.total_chunks,
                        processing_metadata.average_chunk_size,
                        model,
                        processing_metadata.processing_time_ms,
                        created_at,
                        document_id,
                    ),
                )
                return _row_to_document(
                    conn.execute(
                        f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE id = ?",
                        (document_id,),
                    ).fetchone()
                )

        try:
            document = await self._run(write)
        except DimensionMismatch as e:
            logger.error(
                "embedding_dimension_mismatch",
                document_id=document_id,
                model=model,
                error=e.message,
            )
            raise
        except sqlite3.Error as e:
            logger.error("chunk_insert_failed", document_id=document_id, error=str(e))
            raise StoreWriteError(
                f"Failed to persist chunks for document {document_id}: {e}"
            ) from e

        logger.info(
            "chunks_appended",
            document_id=document_id,
            tenant_id=tenant_id,
            chunk_count=len(chunks),
            dimension=dimension,
        )
        return document

    async def get_candidate_chunks(
        self,
        tenant_id: str,
        category: Optional[str] = None,
        embedding_model: Optional[str] = None,
    ) -> List[CandidateChunk]:
        """Chunks of completed documents visible to the tenant.

        Global documents are part of every tenant's candidate set. When
        ``embedding_model`` is given, chunks embedded by other models are left
        out since their vectors are not comparable.
        """
        tenants = visible_tenants(require_tenant_id(tenant_id))
        clauses = [
            "d.status = ?",
            f"d.tenant_id IN ({','.join('?' * len(tenants))})",
        ]
        params: List[Any] = [DocumentStatus.COMPLETED.value, *tenants]
        if category:
            clauses.append("d.category = ?")
            params.append(category)
        if embedding_model:
            clauses.append("c.embedding_model = ?")
            params.append(embedding_model)

        def select(conn: sqlite3.Connection) -> List[CandidateChunk]:
            rows = conn.execute(
                f"""
                SELECT c.id, c.document_id, c.tenant_id, c.chunk_index, c.content,
                       c.embedding, c.metadata_json, d.original_file_name, d.category
                FROM chunks c JOIN documents d ON d.id = c.document_id
                WHERE {' AND '.join(clauses)}
                ORDER BY d.created_at, c.document_id, c.chunk_index
                """,
                params,
            ).fetchall()
            return [
                CandidateChunk(
                    chunk_id=r["id"],
                    document_id=r["document_id"],
                    tenant_id=r["tenant_id"],
                    chunk_index=r["chunk_index"],
                    content=r["content"],
                    embedding=np.frombuffer(r["embedding"], dtype=np.float32),
                    metadata=json.loads(r["metadata_json"]) if r["metadata_json"] else {},
                    file_name=r["original_file_name"],
                    category=r["category"],
                )
                for r in rows
            ]

        return await self._run(select)

    async def count_chunks(self, document_id: str, tenant_id: str) -> int:
        require_tenant_id(tenant_id)

        def select(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ? AND tenant_id = ?",
                (document_id, tenant_id),
            ).fetchone()[0]

        return await self._run(select)

    # Statistics

    async def get_stats(self, tenant_id: str, include_global: bool = False) -> Dict[str, Any]:
        """Aggregate document and chunk counts, computed from the tables."""
        require_tenant_id(tenant_id)
        tenants = visible_tenants(tenant_id) if include_global else (tenant_id,)
        placeholders = ",".join("?" * len(tenants))

        def select(conn: sqlite3.Connection) -> Dict[str, Any]:
            by_status = {s.value: 0 for s in DocumentStatus}
            for row in conn.execute(
                f"SELECT status, COUNT(*) AS n FROM documents "
                f"WHERE tenant_id IN ({placeholders}) GROUP BY status",
                tenants,
            ):
                by_status[row["status"]] = row["n"]

            by_category = {
                row["category"]: row["n"]
                for row in conn.execute(
                    f"SELECT category, COUNT(*) AS n FROM documents "
                    f"WHERE tenant_id IN ({placeholders}) "
                    f"GROUP BY category ORDER BY n DESC, category",
                    tenants,
                )
            }

            searchable_by_category = {
                row["category"]: row["n"]
                for row in conn.execute(
                    f"SELECT category, COUNT(*) AS n FROM documents "
                    f"WHERE tenant_id IN ({placeholders}) AND status = 'completed' "
                    f"GROUP BY category ORDER BY n DESC, category",
                    tenants,
                )
            }

            total_chunks = conn.execute(
                f"SELECT COUNT(*) FROM chunks WHERE tenant_id IN ({placeholders})",
                tenants,
            ).fetchone()[0]

            return {
                "total_documents": sum(by_status.values()),
                "by_status": by_status,
                "by_category": by_category,
                "searchable_by_category": searchable_by_category,
                "total_chunks": total_chunks,
            }

        return await self._run(select)

    # Tenant settings

    async def get_chunking_config(self, tenant_id: str) -> Tuple[int, int]:
        """Chunk size and overlap configured for a tenant (config defaults otherwise)."""
        require_tenant_id(tenant_id)

        def select(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
            return conn.execute(
                "SELECT chunk_size, chunk_overlap FROM tenant_settings WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()

        row = await self._run(select)
        if row is None:
            return config.CHUNK_SIZE, config.CHUNK_OVERLAP
        return row["chunk_size"], row["chunk_overlap"]

    async def set_chunking_config(self, tenant_id: str, chunk_size: int, chunk_overlap: int) -> None:
        require_tenant_id(tenant_id)
        validate_chunking(chunk_size, chunk_overlap)

        def upsert(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    """
                    INSERT INTO tenant_settings (tenant_id, chunk_size, chunk_overlap, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(tenant_id) DO UPDATE SET
                        chunk_size = excluded.chunk_size,
                        chunk_overlap = excluded.chunk_overlap,
                        updated_at = excluded.updated_at
                    """,
                    (tenant_id, chunk_size, chunk_overlap, _now().isoformat()),
                )

        await self._run(upsert)
        logger.info(
            "chunking_config_updated",
            tenant_id=tenant_id,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
        )
