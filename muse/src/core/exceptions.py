"""Error taxonomy for the retrieval and generation pipeline."""

from __future__ import annotations

__all__ = [
    "ConfigurationError",
    "EmbeddingUnavailable",
    "GenerationInterrupted",
    "IndexUnavailable",
    "InvalidInput",
    "MuseError",
    "PipelineTimeout",
    "ProviderTimeout",
    "ProviderUnavailable",
    "RetrievalFailed",
]


class MuseError(Exception):
    """Base exception for all Muse errors."""


class InvalidInput(MuseError):
    """Raised when a query is missing, not text, or blank."""

    status_code = 400


class ConfigurationError(MuseError):
    """Dimensionality mismatch, missing credentials or an unknown model."""


class RetrievalFailed(MuseError):
    """Embedding or index search failed; the pipeline degrades to no context."""


class EmbeddingUnavailable(RetrievalFailed):
    """The embedding provider could not be reached or refused the call."""


class IndexUnavailable(RetrievalFailed):
    """The vector index could not be reached."""


class ProviderUnavailable(MuseError):
    """Generation failed before producing any output."""


class ProviderTimeout(ProviderUnavailable):
    """The completion provider did not answer in time."""


class PipelineTimeout(MuseError):
    """The whole-request deadline expired before any output was produced."""


class GenerationInterrupted(MuseError):
    """Generation failed after partial output; the partial text stays valid."""

    def __init__(self, partial_text: str, cause: BaseException | None = None) -> None:
        super().__init__(f"generation interrupted after {len(partial_text)} chars: {cause!r}")
        self.partial_text = partial_text
        self.cause = cause
