"""
Muse - Shared Resources
========================
Process-wide clients with an explicit lifecycle.

Policy: **open once, reuse, close at shutdown.**  ``SharedResources``
opens the embedding client, the vector index and the completion
provider a single time; every pipeline built from it borrows them.
Nothing closes a shared client except ``SharedResources.close()``, so
a finishing request can never pull a connection out from under a
concurrent one.

Adapters are selected from configuration (``VECTOR_BACKEND``), never by
inspecting types at runtime.

Usage:
    async with SharedResources.open() as resources:
        pipeline = resources.pipeline()
        async for event in pipeline.handle(query):
            ...
"""

from __future__ import annotations

from typing import Any

from muse.config.settings import Settings, settings
from muse.src.core.embeddings import EmbeddingClient, GoogleEmbeddingClient
from muse.src.core.generation import CompletionHook, CompletionProvider, GeminiCompletionProvider, GenerationStreamer, default_options, log_completion
from muse.src.core.rag_engine import RAGPipeline
from muse.src.core.retriever import Retriever
from muse.src.database.vector_store import LanceVectorIndex, VectorIndex
from muse.src.utils.logger import get_logger

logger = get_logger(__name__)


def open_index(config: Settings = settings) -> VectorIndex:
    """Open the configured ``VectorIndex`` adapter."""
    if config.VECTOR_BACKEND == "atlas":
        from muse.src.database.atlas_store import AtlasVectorIndex, get_collection

        collection = get_collection(config.MONGO_URI.get_secret_value(), config.MONGO_NAMESPACE)  # type: ignore[union-attr]
        return AtlasVectorIndex(collection=collection, index_name=config.ATLAS_INDEX_NAME, text_key=config.TEXT_KEY, embedding_key=config.EMBEDDING_KEY, dimensions=config.EMBEDDING_DIMENSIONS, candidate_multiplier=config.ATLAS_CANDIDATE_MULTIPLIER, timeout=config.SEARCH_TIMEOUT_SECONDS)

    return LanceVectorIndex(db_path=str(config.LANCEDB_PATH), table_name=config.LANCEDB_TABLE_NAME, dimensions=config.EMBEDDING_DIMENSIONS, metric=config.SIMILARITY_METRIC, timeout=config.SEARCH_TIMEOUT_SECONDS)


class SharedResources:
    """
    Holder for the three shared collaborators.

    Parameters
    ----------
    embedder / index / provider
        Already-opened adapters.  Use ``SharedResources.open()`` to build
        them from configuration.
    config
        Settings used for pipeline defaults.
    """

    __slots__ = ("embedder", "index", "provider", "_config", "_closed")

    def __init__(self, embedder: EmbeddingClient, index: VectorIndex, provider: CompletionProvider, config: Settings = settings) -> None:
        self.embedder = embedder
        self.index = index
        self.provider = provider
        self._config = config
        self._closed = False


    @classmethod
    def open(cls, config: Settings = settings) -> SharedResources:
        """
        Open every shared client from configuration.

        Called once at process start.  Misconfiguration (bad dimensions,
        missing table schema, bad credentials shape) surfaces here.
        """
        embedder = GoogleEmbeddingClient.from_settings(config)
        index = open_index(config)
        provider = GeminiCompletionProvider(timeout=config.GENERATION_TIMEOUT_SECONDS)
        logger.info("[RESOURCES] Opened shared clients (backend=%s, index=%r).", config.VECTOR_BACKEND, index)
        return cls(embedder, index, provider, config)


    @property
    def closed(self) -> bool:
        return self._closed


    def pipeline(self, on_finish: CompletionHook | None = log_completion, **overrides: Any) -> RAGPipeline:
        """
        Build a ``RAGPipeline`` over the shared clients.

        ``overrides`` are passed to ``RAGPipeline`` (``k``, ``max_chars``,
        ``no_context_policy``, ``timeout``, ``options``).
        """
        if self._closed:
            raise RuntimeError("Shared resources are closed; pipelines can no longer be built.")

        config = self._config
        kwargs: dict[str, Any] = {"options": default_options(config), "k": config.RETRIEVAL_K, "max_chars": config.CONTEXT_MAX_CHARS, "no_context_policy": config.NO_CONTEXT_POLICY, "timeout": config.PIPELINE_TIMEOUT_SECONDS}
        kwargs.update(overrides)
        return RAGPipeline(Retriever(self.embedder, self.index), GenerationStreamer(self.provider), on_finish=on_finish, **kwargs)


    async def close(self) -> None:
        """Release shared clients.  Call once, at process shutdown; idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._config.VECTOR_BACKEND == "atlas":
            from muse.src.database.atlas_store import close_clients

            close_clients()
        logger.info("[RESOURCES] Shared clients closed.")


    async def __aenter__(self) -> SharedResources:
        return self


    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
