"""Pytest configuration and fixtures for unit tests."""
import json
import re
from typing import List

import httpx
import pytest

from clinrag.db import DocumentStore
from clinrag.embedding_client import EmbeddingClient
from clinrag.rag.extract import TextExtractor
from clinrag.service import KnowledgeBase
from clinrag.storage import LocalObjectStorage

TENANT_A = "clinic-a"
TENANT_B = "clinic-b"
USER = "user-1"
EMBEDDING_MODEL = "test-embedding"

_TOKEN = re.compile(r"[a-z0-9]+")


class FakeEmbeddingProvider:
    """OpenAI-compatible embeddings endpoint for httpx.MockTransport.

    Each distinct token gets its own dimension, so texts sharing words score
    above zero and texts sharing none score exactly zero.
    """

    def __init__(self, dimension: int = 512):
        self.dimension = dimension
        self.vocabulary = {}
        self.requests: List[httpx.Request] = []
        # Responses to serve before answering normally: status codes or exceptions
        self.failures = []

    def vector(self, text: str) -> List[float]:
        values = [0.0] * self.dimension
        for token in _TOKEN.findall(text.lower()):
            slot = self.vocabulary.setdefault(token, len(self.vocabulary) % self.dimension)
            values[slot] += 1.0
        return values

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return httpx.Response(failure, json={"error": {"message": "provider failure"}})

        payload = json.loads(request.content)
        data = [
            {"object": "embedding", "index": i, "embedding": self.vector(text)}
            for i, text in enumerate(payload["input"])
        ]
        # Out of order on purpose; clients must sort by index
        data.reverse()
        return httpx.Response(200, json={"data": data, "model": payload["model"]})

    def input_count(self) -> int:
        return sum(len(json.loads(r.content)["input"]) for r in self.requests)


def _make_embedder(provider: FakeEmbeddingProvider, **kwargs) -> EmbeddingClient:
    options = {
        "provider": "openai",
        "base_url": "http://embeddings.test/v1",
        "model": EMBEDDING_MODEL,
        "api_key": "test-key",
        "backoff_seconds": 0,
        "transport": httpx.MockTransport(provider.handler),
    }
    options.update(kwargs)
    return EmbeddingClient(**options)


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def embedder(provider):
    return _make_embedder(provider)


@pytest.fixture
def make_provider():
    """Factory for extra fake providers (e.g. another dimension)."""
    return FakeEmbeddingProvider


@pytest.fixture
def make_embedder():
    """Factory for embedding clients backed by a given fake provider."""
    return _make_embedder


@pytest.fixture
async def store():
    """Open in-memory document store."""
    store = DocumentStore(":memory:")
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "uploads")


@pytest.fixture
def knowledge_base(store, embedder, storage):
    return KnowledgeBase(
        store=store,
        embedder=embedder,
        extractor=TextExtractor(),
        storage=storage,
    )


@pytest.fixture
def ingest(knowledge_base):
    """Ingest a text document through the knowledge base and return its id."""

    async def _ingest(
        text: str,
        tenant_id: str = TENANT_A,
        file_name: str = "notes.txt",
        category: str = "clinical-protocols",
        mime_type: str = "text/plain",
    ) -> str:
        return await knowledge_base.ingest_document(
            file_bytes=text.encode("utf-8"),
            file_name=file_name,
            mime_type=mime_type,
            category=category,
            tenant_id=tenant_id,
            uploader_id=USER,
        )

    return _ingest
