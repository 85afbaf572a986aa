"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
UPLOADS_DIR = DATA_DIR / "uploads"

# Ensure data directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Embedding provider ("openai" or "ollama")
EMBEDDING_PROVIDER = os.getenv("EMBEDDING_PROVIDER", "openai")
EMBEDDING_BASE_URL = os.getenv(
    "EMBEDDING_BASE_URL",
    "https://api.openai.com/v1" if EMBEDDING_PROVIDER == "openai" else "http://localhost:11434",
)
EMBEDDING_API_KEY = os.getenv("EMBEDDING_API_KEY", os.getenv("OPENAI_API_KEY", ""))
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "20.0"))
EMBEDDING_MAX_ATTEMPTS = int(os.getenv("EMBEDDING_MAX_ATTEMPTS", "3"))
EMBEDDING_BACKOFF_SECONDS = float(os.getenv("EMBEDDING_BACKOFF_SECONDS", "0.5"))
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "16"))
# text-embedding-3-small accepts 8191 tokens; ~3 chars/token keeps us clear of it
EMBEDDING_MAX_INPUT_CHARS = int(os.getenv("EMBEDDING_MAX_INPUT_CHARS", "24000"))

# RAG parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
SEARCH_LIMIT = int(os.getenv("SEARCH_LIMIT", "5"))
SEARCH_THRESHOLD = float(os.getenv("SEARCH_THRESHOLD", "0.7"))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "4000"))

# Uploads
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", str(10 * 1024 * 1024)))  # 10MB
ALLOWED_MIME_TYPES = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
    "text/markdown",
    "image/png",
    "image/jpeg",
    "image/tiff",
)

DOCUMENT_CATEGORIES = (
    "scientific-research",
    "clinical-protocols",
    "medical-guidelines",
    "case-studies",
    "functional-medicine",
    "tcm",
    "phytotherapy",
    "nutrition",
    "course-transcripts",
)

# Tenant whose documents are visible to every tenant
GLOBAL_TENANT_ID = os.getenv("GLOBAL_TENANT_ID", "global")

# Ingestion
INGEST_TIMEOUT = float(os.getenv("INGEST_TIMEOUT", "300"))
STALE_PROCESSING_SECONDS = float(os.getenv("STALE_PROCESSING_SECONDS", "900"))

# OCR service (unset = no OCR fallback)
OCR_SERVICE_URL = os.getenv("OCR_SERVICE_URL") or None
OCR_TIMEOUT = float(os.getenv("OCR_TIMEOUT", "60.0"))

# Database
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "clinrag.sqlite")))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
