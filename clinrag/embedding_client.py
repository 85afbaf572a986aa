"""Embedding provider client with retry and input guarding."""
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from clinrag import config
from clinrag.errors import EmbeddingProviderError, InputTooLarge, InvalidParameter

logger = structlog.get_logger()

SUPPORTED_PROVIDERS = ("openai", "ollama")


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, EmbeddingProviderError) and error.retryable


class EmbeddingClient:
    """Async client for text embedding models.

    Texts are sent in batches of ``batch_size``; every request counts
    against the provider quota.
    """

    def __init__(
        self,
        provider: str = None,
        base_url: str = None,
        model: str = None,
        api_key: str = None,
        timeout: float = None,
        max_attempts: int = None,
        backoff_seconds: float = None,
        max_input_chars: int = None,
        batch_size: int = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the embedding client.

        Args:
            provider: "openai" or "ollama" (default from config)
            base_url: Provider API base URL (default from config)
            model: Embedding model identifier (default from config)
            api_key: Bearer token for the provider, if it needs one
            timeout: Per-request timeout in seconds
            max_attempts: Attempts per request, including the first
            backoff_seconds: First retry delay; doubles on each retry
            max_input_chars: Longest text accepted per input
            batch_size: Inputs sent per request
            transport: Optional httpx transport (used by tests)
        """
        self.provider = provider or config.EMBEDDING_PROVIDER
        if self.provider not in SUPPORTED_PROVIDERS:
            raise InvalidParameter(
                f"Unsupported embedding provider: {self.provider!r}"
            )

        self.base_url = (base_url or config.EMBEDDING_BASE_URL).rstrip("/")
        self.model = model or config.EMBEDDING_MODEL
        self.api_key = config.EMBEDDING_API_KEY if api_key is None else api_key
        self.timeout = config.EMBEDDING_TIMEOUT if timeout is None else timeout
        self.max_attempts = max_attempts or config.EMBEDDING_MAX_ATTEMPTS
        self.backoff_seconds = (
            config.EMBEDDING_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.max_input_chars = max_input_chars or config.EMBEDDING_MAX_INPUT_CHARS
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self.transport = transport

    async def embed(self, text: str) -> List[float]:
        """Generate the embedding for a single text."""
        embeddings = await self.embed_batch([text])
        return embeddings[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for several texts, preserving their order.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text

        Raises:
            InvalidParameter: If a text is empty
            InputTooLarge: If a text exceeds the input limit
            EmbeddingProviderError: If the provider fails after retries
        """
        for position, text in enumerate(texts):
            if not text or not text.strip():
                raise InvalidParameter(f"Cannot embed empty text (input {position})")
            if len(text) > self.max_input_chars:
                raise InputTooLarge(
                    f"Input {position} has {len(text)} characters, "
                    f"limit is {self.max_input_chars}"
                )

        embeddings: List[List[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            embeddings.extend(await self._embed_with_retry(batch))

            logger.debug(
                "embeddings_batch_generated",
                batch_size=len(batch),
                total_so_far=len(embeddings),
            )

        return embeddings

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "embedding_request_retry",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            next_wait=getattr(retry_state.next_action, "sleep", None),
            error=str(error),
        )

    async def _embed_with_retry(self, batch: List[str]) -> List[List[float]]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await self._request(batch)
        except EmbeddingProviderError as e:
            logger.error(
                "embedding_generation_failed",
                provider=self.provider,
                model=self.model,
                retryable=e.retryable,
                status_code=e.status_code,
                error=e.message,
            )
            raise

        return result

    async def _request(self, batch: List[str]) -> List[List[float]]:
        if self.provider == "openai":
            url = f"{self.base_url}/embeddings"
        else:
            url = f"{self.base_url}/api/embed"

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {"model": self.model, "input": batch}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                logger.debug(
                    "embedding_request",
                    provider=self.provider,
                    model=self.model,
                    inputs=len(batch),
                )
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()

        except httpx.TimeoutException as e:
            raise EmbeddingProviderError(
                f"Embedding request timed out after {self.timeout}s", retryable=True
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            retryable = status == 429 or status >= 500
            raise EmbeddingProviderError(
                f"Embedding provider returned HTTP {status}",
                retryable=retryable,
                status_code=status,
            ) from e
        except httpx.TransportError as e:
            raise EmbeddingProviderError(
                f"Embedding provider unreachable: {e}", retryable=True
            ) from e
        except ValueError as e:
            raise EmbeddingProviderError(
                f"Embedding provider returned invalid JSON: {e}"
            ) from e

        return self._parse_response(data, expected=len(batch))

    def _parse_response(self, data: Dict[str, Any], expected: int) -> List[List[float]]:
        try:
            if self.provider == "openai":
                items = sorted(data["data"], key=lambda item: item["index"])
                embeddings = [item["embedding"] for item in items]
            else:
                embeddings = data["embeddings"]
        except (KeyError, TypeError) as e:
            raise EmbeddingProviderError(
                f"Malformed embedding response: missing {e}"
            ) from e

        if len(embeddings) != expected:
            raise EmbeddingProviderError(
                f"Expected {expected} embeddings, provider returned {len(embeddings)}"
            )

        for embedding in embeddings:
            if not embedding:
                raise EmbeddingProviderError("Empty embedding returned by provider")

        return [[float(x) for x in embedding] for embedding in embeddings]
