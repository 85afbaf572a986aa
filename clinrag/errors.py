"""Error taxonomy for the RAG engine.

Every error carries a machine-readable ``kind`` and a human-readable message
so the HTTP layer can render it without leaking stack traces.

- Input errors are the caller's fault and are never retried.
- ``EmbeddingProviderError`` is retried inside the embedding client when
  ``retryable`` is set.
- Structural errors point at configuration drift and are logged loudly.
"""
from typing import Any, Dict, Optional


class RAGError(Exception):
    """Base class for all RAG engine errors."""

    kind = "rag_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


# Input errors


class InvalidConfiguration(RAGError, ValueError):
    kind = "invalid_configuration"


class InputTooLarge(RAGError, ValueError):
    kind = "input_too_large"


class UnsupportedMediaType(RAGError, ValueError):
    kind = "unsupported_media_type"


class FileTooLarge(RAGError, ValueError):
    kind = "file_too_large"


class InvalidParameter(RAGError, ValueError):
    kind = "invalid_parameter"


# Provider errors


class EmbeddingProviderError(RAGError):
    kind = "embedding_provider_error"

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retryable"] = self.retryable
        return data


class ExtractionFailed(RAGError):
    kind = "extraction_failed"


# Structural errors


class DimensionMismatch(RAGError):
    kind = "dimension_mismatch"


class StoreWriteError(RAGError):
    kind = "store_write_error"


class InvalidStatusTransition(RAGError):
    kind = "invalid_status_transition"


class DuplicateProcessing(RAGError):
    kind = "duplicate_processing"


# Lookup errors


class DocumentNotFound(RAGError):
    kind = "document_not_found"


class PermissionDenied(RAGError):
    kind = "permission_denied"


# Pipeline


class IngestionFailed(RAGError):
    """Raised after the document's error status has been persisted."""

    kind = "ingestion_failed"

    def __init__(
        self,
        message: str,
        document_id: Optional[str] = None,
        cause_kind: Optional[str] = None,
    ):
        super().__init__(message)
        self.document_id = document_id
        self.cause_kind = cause_kind

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["document_id"] = self.document_id
        if self.cause_kind:
            data["cause"] = self.cause_kind
        return data
