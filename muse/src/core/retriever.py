"""
Muse - Retriever
=================
Embeds the query, searches the vector index and returns a ranked,
bounded ``RetrievalResult``.

Failure policy
--------------
Retrieval failure degrades the answer, it never aborts the request:
``EmbeddingUnavailable`` and ``IndexUnavailable`` are logged as
``RetrievalFailed`` and an empty result with ``error`` set is returned.
``ConfigurationError`` (e.g. a dimensionality mismatch) is *not*
absorbed — returning results for the wrong vector space would be
garbage, not degradation.

One attempt only; retries belong to the adapters.
"""

from __future__ import annotations

import time

from muse.src.core.embeddings import EmbeddingClient
from muse.src.core.exceptions import ConfigurationError, RetrievalFailed
from muse.src.core.models import RetrievalResult
from muse.src.database.vector_store import VectorIndex
from muse.src.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_K = 4


class Retriever:
    """
    Orchestrates ``EmbeddingClient`` + ``VectorIndex``.

    Both collaborators are process-wide shared objects, injected here and
    never opened or closed by the Retriever.
    """

    __slots__ = ("_embedder", "_index")

    def __init__(self, embedder: EmbeddingClient, index: VectorIndex) -> None:
        self._embedder = embedder
        self._index = index


    async def retrieve(self, query: str, k: int = DEFAULT_K) -> RetrievalResult:
        """
        Return up to ``k`` passages for ``query``, most similar first.

        Steps:
            1. Embed the query.
            2. Check the vector width against the index.
            3. Search the index.
            4. Stable-sort by score, descending (order is provider-dependent).
            5. Truncate to ``k``.
        """
        if not query or not query.strip():
            raise ValueError("query must be non-empty")
        if k < 1:
            raise ValueError(f"k must be ≥ 1, got {k}")

        t_start = time.perf_counter()
        logger.info("[RETRIEVAL] Retrieving context for query: '%s' (k=%d)", query[:80], k)

        try:
            vector = await self._embedder.embed(query)
            if len(vector) != self._index.dimensions:
                raise ConfigurationError(f"Embedding has {len(vector)} dimensions but the index expects {self._index.dimensions}.")
            hits = await self._index.search(vector, k)
        except ConfigurationError:
            raise
        except RetrievalFailed as exc:
            logger.warning("[RETRIEVAL] RetrievalFailed (%s): %s — continuing without context.", type(exc).__name__, exc)
            return RetrievalResult(k=k, error=f"{type(exc).__name__}: {exc}")

        ranked = sorted(hits, key=lambda hit: hit.sort_key, reverse=True)[:k]

        elapsed_ms = (time.perf_counter() - t_start) * 1000
        if len(hits) > k:
            logger.debug("[RETRIEVAL] Index over-returned %d hits; truncated to %d.", len(hits), k)
        logger.info("[RETRIEVAL] Retrieved context: %d documents found in %.1fms.", len(ranked), elapsed_ms)
        return RetrievalResult(passages=tuple(ranked), k=k)
