"""Retriever for semantic search over ingested documents.

Handles:
- Query embedding generation
- Tenant-scoped candidate lookup (tenant + global documents)
- Cosine scoring, threshold filtering and top-K ranking
- Formatting results as prompt context
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import structlog

from clinrag import config
from clinrag.db import CandidateChunk, require_tenant_id
from clinrag.embedding_client import EmbeddingClient
from clinrag.errors import DimensionMismatch, InvalidParameter
from clinrag.rag.similarity import rank, score_all

logger = structlog.get_logger()


class CandidateSource(Protocol):
    """Where the retriever reads chunks from.

    ``DocumentStore`` satisfies this by scanning stored chunks; an
    index-backed nearest-neighbour store can take its place later.
    """

    async def get_candidate_chunks(
        self,
        tenant_id: str,
        category: Optional[str] = None,
        embedding_model: Optional[str] = None,
    ) -> List[CandidateChunk]:
        ...

    async def get_stats(self, tenant_id: str, include_global: bool = False) -> Dict[str, Any]:
        ...


@dataclass
class SearchResult:
    """A single retrieved chunk with metadata."""

    content: str
    document_id: str
    chunk_index: int
    score: float
    file_name: str
    category: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        """Get a formatted source string for display."""
        heading = self.metadata.get("heading_context")
        if heading:
            return f"{self.file_name} > {heading}"
        page = self.metadata.get("page_number")
        if page:
            return f"{self.file_name} (p. {page})"
        return self.file_name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "score": round(self.score, 4),
            "file_name": self.file_name,
            "category": self.category,
            "source": self.source,
            "metadata": self.metadata,
        }


def _validate_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise InvalidParameter(f"limit must be a positive integer, got {limit!r}")
    return limit


def _validate_threshold(threshold: Any) -> float:
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        raise InvalidParameter(f"threshold must be a number, got {threshold!r}")
    if math.isnan(threshold) or not -1.0 <= threshold <= 1.0:
        raise InvalidParameter(f"threshold must be within [-1, 1], got {threshold}")
    return float(threshold)


class Retriever:
    """Semantic retriever for RAG pipeline."""

    def __init__(
        self,
        source: CandidateSource,
        embedder: EmbeddingClient,
        limit: int = None,
        threshold: float = None,
    ):
        """Initialize the retriever.

        Args:
            source: Candidate chunk source (normally the DocumentStore)
            embedder: Embedding client used for queries
            limit: Default number of results (default from config)
            threshold: Default minimum score (default from config)
        """
        self.source = source
        self.embedder = embedder
        self.limit = _validate_limit(limit or config.SEARCH_LIMIT)
        self.threshold = _validate_threshold(
            config.SEARCH_THRESHOLD if threshold is None else threshold
        )

    async def search(
        self,
        query: str,
        tenant_id: str,
        category: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        """Retrieve the chunks most similar to a query.

        Args:
            query: User query text
            tenant_id: Tenant whose documents (plus global ones) are searched
            category: Optional category filter
            limit: Maximum results to return
            threshold: Minimum cosine score in [-1, 1]

        Returns:
            Results sorted by score, best first; empty when nothing matches

        Raises:
            InvalidParameter: For a bad tenant id, limit or threshold
            DimensionMismatch: If stored embeddings do not match the query's
        """
        require_tenant_id(tenant_id)
        limit = _validate_limit(self.limit if limit is None else limit)
        threshold = _validate_threshold(self.threshold if threshold is None else threshold)

        if not query or not query.strip():
            logger.warning("empty_query_provided", tenant_id=tenant_id)
            return []

        candidates = await self.source.get_candidate_chunks(
            tenant_id, category, embedding_model=self.embedder.model
        )
        if not candidates:
            logger.info("no_candidates_for_search", tenant_id=tenant_id, category=category)
            return []

        query_embedding = await self.embedder.embed(query)
        results = self._rank(query_embedding, candidates, limit, threshold)

        logger.info(
            "retrieval_completed",
            tenant_id=tenant_id,
            category=category,
            query_length=len(query),
            candidates=len(candidates),
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )
        return results

    async def search_many(
        self,
        queries: Sequence[str],
        tenant_id: str,
        categories: Optional[Sequence[str]] = None,
        limit_per_query: Optional[int] = None,
        threshold: Optional[float] = None,
        max_results: Optional[int] = None,
    ) -> List[SearchResult]:
        """Run several queries over several categories and merge the results.

        Each (query, category) pair contributes up to ``limit_per_query``
        results; duplicates of the same chunk keep their best score.
        """
        require_tenant_id(tenant_id)
        limit_per_query = _validate_limit(
            self.limit if limit_per_query is None else limit_per_query
        )
        threshold = _validate_threshold(self.threshold if threshold is None else threshold)
        max_results = _validate_limit(self.limit if max_results is None else max_results)

        texts = [q for q in queries if q and q.strip()]
        if not texts:
            return []

        candidate_sets = []
        for category in categories or [None]:
            candidates = await self.source.get_candidate_chunks(
                tenant_id, category, embedding_model=self.embedder.model
            )
            if candidates:
                candidate_sets.append(candidates)

        if not candidate_sets:
            return []

        vectors = await self.embedder.embed_batch(texts)

        best: Dict[Tuple[str, int], SearchResult] = {}
        for candidates in candidate_sets:
            for vector in vectors:
                for result in self._rank(vector, candidates, limit_per_query, threshold):
                    key = (result.document_id, result.chunk_index)
                    if key not in best or result.score > best[key].score:
                        best[key] = result

        merged = sorted(best.values(), key=lambda r: r.score, reverse=True)[:max_results]

        logger.info(
            "multi_query_retrieval_completed",
            tenant_id=tenant_id,
            queries=len(texts),
            categories=list(categories or []),
            unique_results=len(best),
            results_returned=len(merged),
        )
        return merged

    def _rank(
        self,
        query_embedding: Sequence[float],
        candidates: List[CandidateChunk],
        limit: int,
        threshold: float,
    ) -> List[SearchResult]:
        try:
            scores = score_all(query_embedding, [c.embedding for c in candidates])
        except DimensionMismatch:
            stale = next(c for c in candidates if len(c.embedding) != len(query_embedding))
            logger.error(
                "embedding_dimension_mismatch",
                document_id=stale.document_id,
                chunk_index=stale.chunk_index,
                stored_dimension=len(stale.embedding),
                query_dimension=len(query_embedding),
                model=self.embedder.model,
            )
            raise DimensionMismatch(
                f"Document {stale.document_id} has {len(stale.embedding)}-dim embeddings "
                f"but {self.embedder.model} produces {len(query_embedding)}; reprocess it"
            ) from None

        kept = [i for i, score in enumerate(scores) if score >= threshold]
        matches = rank([scores[i] for i in kept], limit)

        results = []
        for match in matches:
            chunk = candidates[kept[match.index]]
            results.append(
                SearchResult(
                    content=chunk.content,
                    document_id=chunk.document_id,
                    chunk_index=chunk.chunk_index,
                    score=match.score,
                    file_name=chunk.file_name,
                    category=chunk.category,
                    metadata=chunk.metadata,
                )
            )
        return results

    async def retrieve_context(
        self,
        query: str,
        tenant_id: str,
        category: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        max_chars: int = None,
    ) -> str:
        """Retrieve and format context for an AI prompt.

        Returns:
            Formatted context block, or "" when nothing relevant was found
        """
        max_chars = max_chars or config.MAX_CONTEXT_CHARS
        results = await self.search(query, tenant_id, category, limit, threshold)
        return format_context(results, max_chars)

    async def get_stats(self, tenant_id: str) -> Dict[str, Any]:
        """Document and chunk counts visible to the tenant."""
        require_tenant_id(tenant_id)
        return await self.source.get_stats(tenant_id, include_global=True)

    async def check_availability(
        self, tenant_id: str, categories: Optional[Sequence[str]] = None
    ) -> Dict[str, Any]:
        """Tell callers whether retrieval is worth attempting.

        Only completed documents count; pending or failed ones have no chunks
        a search could return.
        """
        stats = await self.get_stats(tenant_id)

        if categories:
            searchable = stats["searchable_by_category"]
            document_count = sum(searchable.get(c, 0) for c in categories)
        else:
            document_count = stats["by_status"]["completed"]

        return {
            "available": document_count > 0,
            "document_count": document_count,
            "categories": list(categories or []),
        }


def format_context(results: List[SearchResult], max_chars: int) -> str:
    """Build a numbered context block from results within a character budget."""
    if not results:
        return ""

    context_parts = []
    total_chars = 0

    for i, result in enumerate(results, 1):
        chunk_text = f"[Source {i}: {result.source}]\n{result.content.strip()}\n"

        if total_chars + len(chunk_text) > max_chars:
            remaining = max_chars - total_chars
            if remaining > 200:  # Only add if we have meaningful space
                context_parts.append(chunk_text[:remaining] + "...\n")
            break

        context_parts.append(chunk_text)
        total_chars += len(chunk_text)

    context = "\n".join(context_parts)

    logger.debug(
        "context_formatted",
        num_chunks=len(context_parts),
        total_chars=len(context),
    )
    return context
