#!/usr/bin/env python
"""Validate setup - check dependencies, configuration, database and embedding provider."""
import sys
import asyncio
from pathlib import Path

# Color codes for terminal output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
RESET = "\033[0m"

def print_success(msg):
    print(f"{GREEN}✓{RESET} {msg}")

def print_error(msg):
    print(f"{RED}✗{RESET} {msg}")

def print_info(msg):
    print(f"{BLUE}ℹ{RESET} {msg}")

def print_warning(msg):
    print(f"{YELLOW}⚠{RESET} {msg}")

def print_section(title):
    print(f"\n{BLUE}{'='*60}{RESET}")
    print(f"{BLUE}{title:^60}{RESET}")
    print(f"{BLUE}{'='*60}{RESET}\n")

async def main():
    print_section("Clinical RAG - Setup Validation")

    errors = []
    warnings = []

    # 1. Python version check
    print_section("1. Python Environment")
    python_version = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    print_info(f"Python version: {python_version}")
    if sys.version_info >= (3, 10):
        print_success("Python version >= 3.10")
    else:
        print_error("Python version < 3.10 (required)")
        errors.append("Python version too old")

    # 2. Import core dependencies
    print_section("2. Core Dependencies")

    dependencies = [
        ("quart", "Quart web framework"),
        ("httpx", "HTTP client"),
        ("numpy", "Vector math"),
        ("pydantic", "Request validation"),
        ("tenacity", "Retry policies"),
        ("yaml", "YAML frontmatter"),
        ("pypdf", "PDF extraction"),
        ("docx", "DOCX extraction"),
        ("structlog", "Structured logging"),
    ]

    for module_name, description in dependencies:
        try:
            __import__(module_name)
            print_success(f"{description:30} ({module_name})")
        except ImportError as e:
            print_error(f"{description:30} ({module_name}) - {e}")
            errors.append(f"Missing: {module_name}")

    if errors:
        return errors, warnings

    # 3. Configuration
    print_section("3. Configuration")

    sys.path.insert(0, str(Path(__file__).parent.parent))
    from clinrag import config
    from clinrag.db import DocumentStore
    from clinrag.embedding_client import EmbeddingClient
    from clinrag.errors import RAGError
    from clinrag.rag.chunker import validate_chunking

    print_success("Config loaded successfully")
    print_info(f"  Embedding provider: {config.EMBEDDING_PROVIDER}")
    print_info(f"  Embedding model: {config.EMBEDDING_MODEL}")
    print_info(f"  Embedding URL: {config.EMBEDDING_BASE_URL}")
    print_info(f"  Chunk size: {config.CHUNK_SIZE} chars, overlap {config.CHUNK_OVERLAP}")
    print_info(f"  Data directory: {config.DATA_DIR}")

    try:
        validate_chunking(config.CHUNK_SIZE, config.CHUNK_OVERLAP)
        print_success("Chunking parameters valid")
    except RAGError as e:
        print_error(f"Chunking parameters invalid: {e.message}")
        errors.append("Invalid chunking configuration")

    if config.OCR_SERVICE_URL:
        print_success(f"OCR service configured: {config.OCR_SERVICE_URL}")
    else:
        print_warning("No OCR_SERVICE_URL set; scanned PDFs and images will fail to ingest")
        warnings.append("OCR disabled")

    # 4. Database
    print_section("4. Database")

    try:
        async with DocumentStore(config.DB_PATH) as store:
            tenants = await store.tenant_ids()
        print_success(f"Database ready at {config.DB_PATH}")
        print_info(f"  Tenants with documents: {len(tenants)}")
    except Exception as e:
        print_error(f"Database check failed: {e}")
        errors.append("Database unavailable")

    # 5. Embedding provider
    print_section("5. Embedding Provider")

    try:
        client = EmbeddingClient(max_attempts=1)
        vector = await client.embed("setup validation")
        print_success(f"Embedding generated: dimension {len(vector)}")
    except RAGError as e:
        print_error(f"Embedding provider check failed: {e.message}")
        errors.append("Embedding provider unavailable")

    # 6. Summary
    print_section("Summary")

    if not errors:
        print_success("All checks passed! ✨")
    else:
        print_error(f"Found {len(errors)} error(s):")
        for i, error in enumerate(errors, 1):
            print(f"  {i}. {error}")

    if warnings:
        print_warning(f"\nFound {len(warnings)} warning(s):")
        for i, warning in enumerate(warnings, 1):
            print(f"  {i}. {warning}")

    print()
    return errors, warnings

if __name__ == "__main__":
    errors, warnings = asyncio.run(main())
    sys.exit(1 if errors else 0)
