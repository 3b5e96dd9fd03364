"""
Retrieval service for RAG queries.

Ranks documentation chunks by cosine distance to the query embedding and
packs the nearest ones into a token budget. Packing is a prefix cut over the
full ranking: cumulative token counts are taken in distance order and
everything from the first chunk that pushes the sum past the budget onward
is dropped, even if a later, smaller chunk would still fit.
"""
import itertools
import logging
from dataclasses import dataclass
from math import sqrt
from typing import Iterable, List, Optional, Protocol, Sequence

from django.conf import settings
from django.db import DatabaseError, connection, transaction

from apps.rag.deadline import RequestDeadline
from apps.rag.errors import DeadlineExceeded, UpstreamUnavailable

logger = logging.getLogger(__name__)


class RetrievalError(UpstreamUnavailable):
    """Raised when the document store query fails."""
    pass


@dataclass
class RankedChunk:
    """A stored chunk with its distance to the current query."""
    text: str
    n_tokens: int
    file_path: str
    distance: float


@dataclass
class RetrievedPassage:
    """A passage selected for the prompt, with its public source URL."""
    text: str
    source_url: str
    distance: float

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "url": self.source_url,
            "text": self.text,
            "distance": round(self.distance, 4),
        }


def source_path_to_url(
    file_path: str,
    prefix: Optional[str] = None,
    base_url: Optional[str] = None,
    extension: Optional[str] = None,
) -> str:
    """
    Map a flattened source path to its documentation URL.

    ``vuejsorg_guide_reactivity.txt`` -> ``https://vuejs.org/guide/reactivity``
    """
    if prefix is None:
        prefix = getattr(settings, 'DOCS_PATH_PREFIX', 'vuejsorg')
    if base_url is None:
        base_url = getattr(settings, 'DOCS_BASE_URL', 'https://vuejs.org')
    if extension is None:
        extension = getattr(settings, 'DOCS_PATH_EXTENSION', '.txt')

    url = file_path.replace('_', '/')
    if prefix and url.startswith(prefix):
        url = base_url + url[len(prefix):]
    if extension and url.endswith(extension):
        url = url[:-len(extension)]
    return url


def pack_by_token_budget(ranked: Sequence[RankedChunk], token_budget: int) -> List[RankedChunk]:
    """
    Keep the ranked prefix whose cumulative token count fits the budget.

    Chunks at the same distance share one cumulative value (they are peers
    in ``SUM(...) OVER (ORDER BY distance)``), so ties are kept or dropped
    together. The result is ordered by ascending distance.
    """
    ordered = sorted(ranked, key=lambda chunk: chunk.distance)
    kept: List[RankedChunk] = []
    cumulative = 0

    for _, peers in itertools.groupby(ordered, key=lambda chunk: chunk.distance):
        peers = list(peers)
        cumulative += sum(chunk.n_tokens for chunk in peers)
        if cumulative > token_budget:
            break
        kept.extend(peers)

    return kept


class DocumentStore(Protocol):
    """Similarity query contract shared by the store backends."""

    def search(
        self,
        query_embedding: List[float],
        token_budget: int,
        timeout: Optional[float] = None,
    ) -> List[RankedChunk]:
        """Return budget-packed chunks ordered by ascending distance within timeout seconds."""


class PgVectorDocumentStore:
    """
    Document store backed by the pgvector ``documents`` table.

    Distance, cumulative token window and cut all run in one SQL statement
    so only the kept rows leave the database.
    """

    SEARCH_SQL = """
        SELECT text, n_tokens, file_path, distance
        FROM (
            SELECT
                id,
                text,
                n_tokens,
                file_path,
                embeddings <=> %s::vector AS distance,
                SUM(n_tokens) OVER (ORDER BY embeddings <=> %s::vector) AS cum_n_tokens
            FROM documents
        ) ranked
        WHERE cum_n_tokens <= %s
        ORDER BY distance ASC, id ASC
    """

    def search(
        self,
        query_embedding: List[float],
        token_budget: int,
        timeout: Optional[float] = None,
    ) -> List[RankedChunk]:
        # Convert embedding to PostgreSQL vector literal
        embedding_str = '[' + ','.join(str(x) for x in query_embedding) + ']'
        params = [embedding_str, embedding_str, token_budget]

        try:
            with transaction.atomic(), connection.cursor() as cursor:
                if timeout is not None:
                    # Scoped to this transaction; Postgres cancels the scan past it
                    cursor.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        [str(max(1, int(timeout * 1000)))],
                    )
                cursor.execute(self.SEARCH_SQL, params)
                rows = cursor.fetchall()
        except DatabaseError as e:
            logger.error(f"Document store query failed: {e}")
            raise RetrievalError("Document store unavailable") from e

        return [
            RankedChunk(
                text=text,
                n_tokens=int(n_tokens),
                file_path=file_path,
                distance=float(distance),
            )
            for text, n_tokens, file_path, distance in rows
        ]


@dataclass
class _StoredChunk:
    text: str
    n_tokens: int
    file_path: str
    embedding: List[float]


class InMemoryDocumentStore:
    """Deterministic document store used for tests and local prototyping."""

    def __init__(self, chunks: Optional[Iterable[tuple]] = None):
        self._chunks: List[_StoredChunk] = []
        for text, n_tokens, embedding, file_path in chunks or ():
            self.add(text, n_tokens, embedding, file_path)

    def add(self, text: str, n_tokens: int, embedding: List[float], file_path: str) -> None:
        self._chunks.append(
            _StoredChunk(text=text, n_tokens=n_tokens, file_path=file_path, embedding=list(embedding))
        )

    def __len__(self) -> int:
        return len(self._chunks)

    def search(
        self,
        query_embedding: List[float],
        token_budget: int,
        timeout: Optional[float] = None,
    ) -> List[RankedChunk]:
        ranked = [
            RankedChunk(
                text=chunk.text,
                n_tokens=chunk.n_tokens,
                file_path=chunk.file_path,
                distance=cosine_distance(query_embedding, chunk.embedding),
            )
            for chunk in self._chunks
        ]
        return pack_by_token_budget(ranked, token_budget)


def cosine_distance(a: List[float], b: List[float]) -> float:
    """Cosine distance as computed by pgvector's ``<=>`` (1 - similarity)."""
    if not a or not b or len(a) != len(b):
        raise ValueError("vectors must be non-empty and of equal length")
    numerator = sum(x * y for x, y in zip(a, b))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 1.0
    return 1.0 - numerator / (norm_a * norm_b)


_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Get the configured document store (pgvector by default)."""
    global _store
    if _store is None:
        _store = PgVectorDocumentStore()
    return _store


def set_document_store(store: Optional[DocumentStore]) -> None:
    """Swap the document store (None restores the default). Useful for testing."""
    global _store
    _store = store


def retrieve(
    query_embedding: List[float],
    token_budget: Optional[int] = None,
    store: Optional[DocumentStore] = None,
    deadline: Optional[RequestDeadline] = None,
) -> List[RetrievedPassage]:
    """
    Retrieve the passages to ground an answer on.

    An empty list is a valid result: nothing fit the budget and the model
    answers with an empty context block.

    Raises:
        RetrievalError: If the document store cannot be queried
        DeadlineExceeded: The query ran past the request deadline
    """
    if token_budget is None:
        token_budget = getattr(settings, 'RAG_CONTEXT_TOKEN_BUDGET', 1700)
    if store is None:
        store = get_document_store()

    timeout = deadline.remaining() if deadline is not None else None
    try:
        chunks = store.search(query_embedding, token_budget, timeout=timeout)
    except RetrievalError as e:
        if deadline is not None and deadline.expired:
            raise DeadlineExceeded(
                f"Document search ran past the {deadline.seconds:.0f}s deadline"
            ) from e
        raise

    passages = [
        RetrievedPassage(
            text=chunk.text,
            source_url=source_path_to_url(chunk.file_path),
            distance=chunk.distance,
        )
        for chunk in chunks
    ]

    logger.info(
        f"Retrieved {len(passages)} passages "
        f"({sum(chunk.n_tokens for chunk in chunks)}/{token_budget} tokens)"
    )
    return passages


def format_sources_markdown(passages: Sequence[RetrievedPassage]) -> str:
    """Render the citation list appended below an answer."""
    if not passages:
        return ""
    lines = "".join(f"* [{p.source_url}]({p.source_url})\n" for p in passages)
    return f"\n\n### Source\n{lines}"
