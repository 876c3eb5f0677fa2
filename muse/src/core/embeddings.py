"""
Muse - Embedding Client
========================
Turns free text into a fixed-length vector.

``EmbeddingClient`` is the capability every embedding adapter satisfies.
``GoogleEmbeddingClient`` is the Gemini adapter: it wraps a LangChain
embedding model (``GoogleGenerativeAIEmbeddings`` in production, any
object with ``aembed_query`` in tests) and turns every provider failure
into ``EmbeddingUnavailable``.

Retries belong here, not in the Retriever: the LangChain client
retries transient Google API errors on its own.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol, runtime_checkable

from muse.config.settings import Settings, settings
from muse.src.core.exceptions import EmbeddingUnavailable
from muse.src.core.models import EmbeddingVector
from muse.src.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class EmbeddingClient(Protocol):
    """Anything that can embed a query."""

    async def embed(self, text: str) -> EmbeddingVector: ...


@runtime_checkable
class AsyncQueryEmbedder(Protocol):
    """Structural type for a LangChain-compatible embedding model."""

    async def aembed_query(self, text: str) -> list[float]: ...


class GoogleEmbeddingClient:
    """
    ``EmbeddingClient`` backed by a LangChain embedding model.

    Parameters
    ----------
    embedder
        Object exposing ``aembed_query``.
    timeout
        Per-call timeout in seconds.  Defaults to ``settings.EMBED_TIMEOUT_SECONDS``.
    """

    __slots__ = ("_embedder", "_timeout")

    def __init__(self, embedder: AsyncQueryEmbedder, timeout: float | None = None) -> None:
        self._embedder = embedder
        self._timeout: float = timeout or settings.EMBED_TIMEOUT_SECONDS


    @classmethod
    def from_settings(cls, config: Settings = settings) -> GoogleEmbeddingClient:
        """Build the Gemini embedder from configuration."""
        from langchain_google_genai import GoogleGenerativeAIEmbeddings

        embedder = GoogleGenerativeAIEmbeddings(model=config.EMBEDDING_MODEL, google_api_key=config.GOOGLE_API_KEY.get_secret_value())
        logger.info("Embedding model initialised: %s", config.EMBEDDING_MODEL)
        return cls(embedder, timeout=config.EMBED_TIMEOUT_SECONDS)


    async def embed(self, text: str) -> EmbeddingVector:
        """
        Embed ``text``.

        Raises
        ------
        EmbeddingUnavailable
            On timeout or any provider error (network, auth, quota).
        """
        t_start = time.perf_counter()
        try:
            vector = await asyncio.wait_for(self._embedder.aembed_query(text), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingUnavailable(f"embedding timed out after {self._timeout:.1f}s") from exc
        except Exception as exc:
            raise EmbeddingUnavailable(f"embedding failed: {exc}") from exc

        logger.debug("[EMBED] %d-dim vector in %.1fms", len(vector), (time.perf_counter() - t_start) * 1000)
        return [float(x) for x in vector]
