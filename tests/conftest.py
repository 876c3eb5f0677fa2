"""Shared fixtures and fakes for Muse tests."""

from __future__ import annotations

import asyncio
import logging
import os

# Settings are loaded at import time and require an API key.
os.environ.setdefault("GOOGLE_API_KEY", "test-google-api-key")

import pytest  # noqa: E402

from muse.src.core.generation import GenerationStreamer  # noqa: E402
from muse.src.core.models import GenerationOptions, RenderedPrompt, SearchHit, StreamEnd  # noqa: E402
from muse.src.core.rag_engine import RAGPipeline  # noqa: E402
from muse.src.core.retriever import Retriever  # noqa: E402

DIM = 8


class FakeEmbeddingClient:
    """Returns a fixed vector, or raises the configured error."""

    def __init__(self, dimensions: int = DIM, error: Exception | None = None, delay: float = 0.0) -> None:
        self.dimensions = dimensions
        self.error = error
        self.delay = delay
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [0.1] * self.dimensions


class FakeVectorIndex:
    """Returns pre-configured hits in the given order (not necessarily sorted)."""

    def __init__(self, hits: list[SearchHit] | None = None, dimensions: int = DIM, error: Exception | None = None) -> None:
        self.hits = hits or []
        self.dimensions = dimensions
        self.error = error
        self.calls: list[tuple[list[float], int]] = []

    async def search(self, vector: list[float], k: int) -> list[SearchHit]:
        self.calls.append((vector, k))
        if self.error is not None:
            raise self.error
        return list(self.hits)


class FakeCompletionProvider:
    """
    Streams ``chunks`` one by one.

    ``fail_at`` raises ``error`` before yielding chunk number ``fail_at``
    (0 means before any output).  ``delays`` maps a chunk position to a
    sleep taken before yielding it.
    """

    def __init__(self, chunks: list[str] | None = None, fail_at: int | None = None, error: Exception | None = None, delays: dict[int, float] | None = None) -> None:
        self.chunks = chunks if chunks is not None else ["Par", "is is", " the capital."]
        self.fail_at = fail_at
        self.error = error or RuntimeError("provider exploded")
        self.delays = delays or {}
        self.calls: list[tuple[RenderedPrompt, GenerationOptions]] = []
        self.pulled = 0
        self.closed = False

    async def stream_generate(self, prompt: RenderedPrompt, options: GenerationOptions):
        self.calls.append((prompt, options))
        try:
            for position in range(len(self.chunks) + 1):
                if self.fail_at == position:
                    raise self.error
                if position == len(self.chunks):
                    return
                if position in self.delays:
                    await asyncio.sleep(self.delays[position])
                self.pulled += 1
                yield self.chunks[position]
        finally:
            self.closed = True


class HookRecorder:
    """Completion hook that records every ``StreamEnd`` it receives."""

    def __init__(self) -> None:
        self.calls: list[StreamEnd] = []

    def __call__(self, end: StreamEnd) -> None:
        self.calls.append(end)


def paris_hit(score: float = 0.92) -> SearchHit:
    return SearchHit(text="Paris is the capital of France.", score=score, metadata={"source": "geo.txt"})


def make_pipeline(hits: list[SearchHit] | None = None, embed_error: Exception | None = None, index_error: Exception | None = None, provider: FakeCompletionProvider | None = None, embedder: FakeEmbeddingClient | None = None, **kwargs):
    """Build a pipeline over fakes; returns (pipeline, embedder, index, provider, hook)."""
    embedder = embedder or FakeEmbeddingClient(error=embed_error)
    index = FakeVectorIndex(hits=hits, error=index_error)
    provider = provider or FakeCompletionProvider()
    hook = HookRecorder()
    options = GenerationOptions(model="test-model", temperature=0.7, max_output_tokens=1024)
    kwargs.setdefault("k", 4)
    kwargs.setdefault("max_chars", None)
    kwargs.setdefault("no_context_policy", "generate")
    kwargs.setdefault("timeout", 5.0)
    kwargs.setdefault("on_finish", hook)
    pipeline = RAGPipeline(Retriever(embedder, index), GenerationStreamer(provider), options=options, **kwargs)
    return pipeline, embedder, index, provider, hook


async def collect(events) -> list:
    return [event async for event in events]


@pytest.fixture
def options() -> GenerationOptions:
    return GenerationOptions(model="test-model", temperature=0.7, max_output_tokens=64)


@pytest.fixture
def muse_logs(caplog: pytest.LogCaptureFixture):
    """Capture records from Muse loggers (they do not propagate to root)."""
    names = ["muse.src.core.retriever", "muse.src.core.generation", "muse.src.core.rag_engine"]
    loggers = [logging.getLogger(name) for name in names]
    for logger in loggers:
        logger.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG)
    yield caplog
    for logger in loggers:
        logger.removeHandler(caplog.handler)
