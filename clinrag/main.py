"""Quart application exposing the clinical RAG knowledge base."""
import logging
from typing import Optional, Tuple

from pydantic import BaseModel, Field, ValidationError
from quart import Quart, jsonify, request
import structlog

from clinrag import config
from clinrag.errors import (
    DimensionMismatch,
    DocumentNotFound,
    DuplicateProcessing,
    EmbeddingProviderError,
    ExtractionFailed,
    FileTooLarge,
    IngestionFailed,
    InputTooLarge,
    InvalidConfiguration,
    InvalidParameter,
    InvalidStatusTransition,
    PermissionDenied,
    RAGError,
    StoreWriteError,
    UnsupportedMediaType,
)
from clinrag.rag.retriever import format_context
from clinrag.service import KnowledgeBase

logging.basicConfig(format="%(message)s", level=config.LOG_LEVEL)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger()

ERROR_STATUS = {
    InvalidParameter: 400,
    InvalidConfiguration: 400,
    InputTooLarge: 400,
    PermissionDenied: 403,
    DocumentNotFound: 404,
    DuplicateProcessing: 409,
    InvalidStatusTransition: 409,
    FileTooLarge: 413,
    UnsupportedMediaType: 415,
    ExtractionFailed: 422,
    IngestionFailed: 422,
    EmbeddingProviderError: 502,
    DimensionMismatch: 500,
    StoreWriteError: 500,
}

SUPERADMIN_ROLE = "superadmin"


def status_for(error: RAGError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def _identity() -> Tuple[str, str]:
    """Tenant and user ids set by the authentication layer in front of us."""
    tenant_id = request.headers.get("X-Tenant-Id")
    user_id = request.headers.get("X-User-Id")
    if not tenant_id:
        raise InvalidParameter("Missing X-Tenant-Id header")
    if not user_id:
        raise InvalidParameter("Missing X-User-Id header")
    if tenant_id == config.GLOBAL_TENANT_ID:
        raise PermissionDenied("The global tenant is only reachable with scope=global")
    return tenant_id, user_id


def _target_tenant(tenant_id: str, scope: Optional[str]) -> str:
    """Tenant a write applies to; scope=global needs the superadmin role."""
    if scope != "global":
        return tenant_id
    if request.headers.get("X-User-Role") != SUPERADMIN_ROLE:
        raise PermissionDenied("Only superadmins can change global documents")
    return config.GLOBAL_TENANT_ID


class SearchRequest(BaseModel):
    """Body of a search request."""
    query: str = Field(..., description="Free-text query")
    category: Optional[str] = Field(None, description="Restrict to one document category")
    limit: Optional[int] = Field(None, description="Maximum results")
    threshold: Optional[float] = Field(None, description="Minimum cosine score in [-1, 1]")
    include_context: bool = Field(False, description="Also return a formatted prompt context")


class DocumentListQuery(BaseModel):
    """Query string of a document listing."""
    category: Optional[str] = None
    status: Optional[str] = None
    page: int = 1
    page_size: int = 20


def _parse(model: type[BaseModel], data) -> BaseModel:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidParameter(f"Invalid request: {problems}") from None


def create_app(knowledge_base: Optional[KnowledgeBase] = None) -> Quart:
    """Build the Quart app around a knowledge base.

    The knowledge base is opened before serving and closed after.
    """
    app = Quart(__name__)
    # Leave room for multipart framing around the largest accepted file
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_FILE_SIZE + 1024 * 1024

    kb = knowledge_base or KnowledgeBase.from_config()
    app.extensions["knowledge_base"] = kb

    @app.before_serving
    async def open_knowledge_base():
        await kb.open()

    @app.after_serving
    async def close_knowledge_base():
        await kb.close()

    @app.route("/api/rag/documents", methods=["POST"])
    async def upload_document():
        """Upload and ingest a document.

        Expects multipart form data:
            file: the document
            category: one of the configured categories
            scope: optional, "global" to publish to every tenant (superadmin only)
        """
        tenant_id, user_id = _identity()
        files = await request.files
        form = await request.form

        upload = files.get("file")
        if upload is None:
            raise InvalidParameter("No file provided")

        tenant_id = _target_tenant(tenant_id, form.get("scope"))

        data = upload.read()
        document_id = await kb.ingest_document(
            file_bytes=data,
            file_name=upload.filename or "",
            mime_type=upload.mimetype or "",
            category=form.get("category", ""),
            tenant_id=tenant_id,
            uploader_id=user_id,
        )
        document = await kb.get_document(document_id, tenant_id)

        logger.info(
            "document_upload_completed",
            document_id=document_id,
            tenant_id=tenant_id,
            file_size=len(data),
        )
        return jsonify({"document": document.to_dict()}), 201

    @app.route("/api/rag/documents", methods=["GET"])
    async def list_documents():
        tenant_id, _ = _identity()
        query = _parse(DocumentListQuery, request.args.to_dict())
        page = await kb.list_documents(
            tenant_id,
            category=query.category or None,
            status=query.status or None,
            page=query.page,
            page_size=query.page_size,
        )
        return jsonify(page.to_dict())

    @app.route("/api/rag/documents/<document_id>", methods=["GET"])
    async def get_document(document_id: str):
        tenant_id, _ = _identity()
        document = await kb.get_document(document_id, tenant_id)
        return jsonify({"document": document.to_dict()})

    @app.route("/api/rag/documents/<document_id>", methods=["DELETE"])
    async def delete_document(document_id: str):
        """Delete a document; ?scope=global targets a global one (superadmin only)."""
        tenant_id, _ = _identity()
        tenant_id = _target_tenant(tenant_id, request.args.get("scope"))
        if not await kb.delete_document(document_id, tenant_id):
            raise DocumentNotFound(f"Document not found: {document_id}")
        return "", 204

    @app.route("/api/rag/documents/<document_id>/reprocess", methods=["POST"])
    async def reprocess_document(document_id: str):
        """Re-run ingestion; ?scope=global targets a global document (superadmin only)."""
        tenant_id, _ = _identity()
        tenant_id = _target_tenant(tenant_id, request.args.get("scope"))
        document = await kb.reprocess_document(document_id, tenant_id)
        return jsonify({"document": document.to_dict()})

    @app.route("/api/rag/search", methods=["POST"])
    async def search():
        """Semantic search over the tenant's (and global) documents.

        Expects JSON body:
        {
            "query": "text",
            "category": "optional-category",
            "limit": 5,
            "threshold": 0.7,
            "include_context": false
        }
        """
        tenant_id, _ = _identity()
        data = await request.get_json(silent=True)
        if not isinstance(data, dict):
            raise InvalidParameter("Request body must be a JSON object")
        body = _parse(SearchRequest, data)

        results = await kb.search(
            body.query,
            tenant_id,
            category=body.category,
            limit=body.limit,
            threshold=body.threshold,
        )

        response = {
            "results": [r.to_dict() for r in results],
            "count": len(results),
        }
        if body.include_context:
            response["context"] = format_context(results, config.MAX_CONTEXT_CHARS)
        return jsonify(response)

    @app.route("/api/rag/stats", methods=["GET"])
    async def stats():
        tenant_id, _ = _identity()
        return jsonify(await kb.get_stats(tenant_id))

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - the document store must be open."""
        if kb.store.is_open:
            return jsonify({"status": "healthy"}), 200
        return jsonify({"status": "unhealthy", "error": "document store closed"}), 503

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(RAGError)
    async def handle_rag_error(error: RAGError):
        status = status_for(error)
        if status >= 500:
            logger.error("request_failed", kind=error.kind, error=error.message)
        else:
            logger.info("request_rejected", kind=error.kind, error=error.message)
        return jsonify({"error": error.to_dict()}), status

    @app.errorhandler(404)
    async def not_found(error):
        return jsonify({"error": {"kind": "not_found", "message": "Not found"}}), 404

    @app.errorhandler(413)
    async def too_large(error):
        return jsonify({"error": FileTooLarge("Upload exceeds the size limit").to_dict()}), 413

    @app.errorhandler(500)
    async def internal_error(error):
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": {"kind": "internal", "message": "Internal server error"}}), 500

    return app


app = create_app()


if __name__ == "__main__":
    # For development - use hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
