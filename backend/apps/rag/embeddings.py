"""
Embedding service for RAG queries.

Turns the user's question into a vector with the same model that embedded
the documentation chunks (OpenAI text-embedding-ada-002 by default, or an
Ollama embedding model).
"""
import logging
import re
from typing import List, Optional

import httpx
from django.conf import settings

from apps.rag.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class EmbeddingError(UpstreamUnavailable):
    """Raised when embedding generation fails."""
    pass


class QueryValidationError(Exception):
    """Raised when query validation fails."""
    pass


def normalize_query(query) -> str:
    """
    Normalize a user query for embedding.

    - Strip leading/trailing whitespace
    - Collapse multiple whitespace to single space
    - Raise if empty or too long

    Raises:
        QueryValidationError: If query is empty after normalization
    """
    if not isinstance(query, str) or not query:
        raise QueryValidationError("Query cannot be empty")

    # Strip and collapse whitespace
    normalized = re.sub(r'\s+', ' ', query.strip())

    if not normalized:
        raise QueryValidationError("Query cannot be empty")

    max_length = getattr(settings, 'MAX_QUERY_LENGTH', 2000)
    if len(normalized) > max_length:
        raise QueryValidationError(f"Query too long (max {max_length} characters)")

    return normalized


def _openai_request(query: str) -> tuple:
    base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
    api_key = getattr(settings, 'OPENAI_API_KEY', '')
    if not api_key:
        raise EmbeddingError("OPENAI_API_KEY not configured")
    return (
        f"{base_url}/embeddings",
        {
            "model": getattr(settings, 'OPENAI_EMBED_MODEL', 'text-embedding-ada-002'),
            "input": query,
        },
        {"Authorization": f"Bearer {api_key}"},
    )


def _ollama_request(query: str) -> tuple:
    base_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
    return (
        f"{base_url}/api/embeddings",
        {
            "model": getattr(settings, 'OLLAMA_EMBED_MODEL', 'nomic-embed-text'),
            "prompt": query,
        },
        {},
    )


def _extract_embedding(provider: str, data: dict) -> List[float]:
    if provider == 'ollama':
        # Ollama /api/embeddings returns {"embedding": [...]}
        return data.get("embedding")
    # OpenAI returns {"data": [{"embedding": [...]}]}
    return data["data"][0]["embedding"]


def embed_query(
    query: str,
    timeout: Optional[float] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> List[float]:
    """
    Generate embedding vector for a user query.

    Args:
        query: Normalized user question
        timeout: Seconds allowed for the provider call
        transport: Optional httpx transport (used by tests)

    Returns:
        Embedding vector as list of floats

    Raises:
        EmbeddingError: If the provider call fails or returns a bad vector
    """
    provider = getattr(settings, 'EMBEDDING_PROVIDER', 'openai').lower()
    expected_dimension = getattr(settings, 'EMBEDDING_DIMENSION', 1536)
    if timeout is None:
        timeout = getattr(settings, 'REQUEST_DEADLINE_SECONDS', 30.0)

    if provider == 'ollama':
        url, payload, headers = _ollama_request(query)
    else:
        url, payload, headers = _openai_request(query)

    try:
        with httpx.Client(timeout=float(timeout), transport=transport) as client:
            response = client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            embedding = _extract_embedding(provider, response.json())

    except httpx.HTTPStatusError as e:
        logger.error(f"Embedding request failed: {e}")
        raise EmbeddingError(f"Embedding service error: {e.response.status_code}")
    except httpx.TimeoutException:
        logger.error("Embedding request timed out")
        raise EmbeddingError("Embedding service timed out")
    except httpx.RequestError as e:
        logger.error(f"Embedding connection error: {e}")
        raise EmbeddingError("Could not connect to embedding service")
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
        logger.error(f"Unexpected embedding response format: {e}")
        raise EmbeddingError("Invalid response from embedding service")

    if not embedding:
        raise EmbeddingError("Embedding service returned empty embedding")

    # Vectors must match the documents.embeddings column
    if len(embedding) != expected_dimension:
        logger.error(
            f"Embedding dimension mismatch: expected {expected_dimension}, "
            f"got {len(embedding)}"
        )
        raise EmbeddingError("Embedding dimension does not match document store")

    logger.debug(f"Generated query embedding with {len(embedding)} dimensions")
    return [float(x) for x in embedding]
