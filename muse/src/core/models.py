"""
Muse - Data Model
==================
Immutable pydantic models passed between pipeline stages.

Every model is ``frozen``: a stage may read what the previous stage
produced but never mutate it.  Per-request models (``ContextBundle``,
``RenderedPrompt``) are created inside one pipeline run and never
shared across runs.
"""

from __future__ import annotations

import math
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from muse.config.prompt_templates import CONTEXT_END, CONTEXT_START, PASSAGE_DELIMITER, PASSAGE_SEPARATOR

# ── Type aliases ───────────────────────────────────────────────────────
EmbeddingVector = list[float]
PassageMetadata = dict[str, str | int | float | bool]
FinishReason = Literal["complete", "interrupted", "cancelled", "failed"]

_MARKERS: tuple[str, ...] = (CONTEXT_START, CONTEXT_END, PASSAGE_DELIMITER)


class SearchHit(BaseModel):
    """One record returned by a vector index, with its similarity score."""

    model_config = ConfigDict(frozen=True)

    text: str
    score: float
    metadata: PassageMetadata = Field(default_factory=dict)

    @property
    def sort_key(self) -> float:
        """Score usable for ordering; NaN and infinities rank last."""
        return self.score if math.isfinite(self.score) else -math.inf


class RetrievalResult(BaseModel):
    """
    Ranked passages for one query.

    ``passages`` is ordered by non-increasing score and never longer than
    ``k``.  ``error`` is set when retrieval failed and the result was
    degraded to empty.
    """

    model_config = ConfigDict(frozen=True)

    passages: tuple[SearchHit, ...] = ()
    k: int
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def texts(self) -> list[str]:
        return [hit.text for hit in self.passages]

    @property
    def scores(self) -> list[float]:
        return [hit.score for hit in self.passages]

    def __len__(self) -> int:
        return len(self.passages)


def _neutralise(text: str) -> str:
    """Rewrite any delimiter that appears inside passage text into plain ASCII."""
    for marker in _MARKERS:
        if marker in text:
            text = text.replace(marker, marker.replace("═", "=").replace("─", "-"))
    return text


class ContextBundle(BaseModel):
    """
    Retrieved passage texts in descending-similarity order.

    The order is fixed at construction and never changes.  ``text`` joins
    the passages with ``PASSAGE_SEPARATOR``.
    """

    model_config = ConfigDict(frozen=True)

    passages: tuple[str, ...] = ()

    @field_validator("passages")
    @classmethod
    def _clean_passages(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(_neutralise(p) for p in v)

    @classmethod
    def from_result(cls, result: RetrievalResult) -> ContextBundle:
        return cls(passages=tuple(result.texts))

    @property
    def is_empty(self) -> bool:
        return not self.passages

    @property
    def text(self) -> str:
        return PASSAGE_SEPARATOR.join(self.passages)

    def fit(self, max_chars: int) -> ContextBundle:
        """
        Drop passages from the end until the joined text fits ``max_chars``.

        Passages are never cut mid-text; the lowest-similarity passage goes
        first.
        """
        if max_chars < 0:
            raise ValueError(f"max_chars must be ≥ 0, got {max_chars}")

        kept: list[str] = []
        size = 0
        for passage in self.passages:
            added = len(passage) + (len(PASSAGE_SEPARATOR) if kept else 0)
            if size + added > max_chars:
                break
            kept.append(passage)
            size += added

        if len(kept) == len(self.passages):
            return self
        return ContextBundle(passages=tuple(kept))


class PromptMessage(BaseModel):
    """A single role-tagged prompt message."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user"]
    content: str


class RenderedPrompt(BaseModel):
    """The ordered messages sent to the completion provider."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[PromptMessage, ...]

    @property
    def text(self) -> str:
        """All message contents, in order (for logging and size checks)."""
        return "\n\n".join(m.content for m in self.messages)


class GenerationOptions(BaseModel):
    """Recognised generation parameters."""

    model_config = ConfigDict(frozen=True)

    model: str
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=1024, ge=1)

    @field_validator("model")
    @classmethod
    def _model_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("model identifier must not be blank")
        return v


class StreamFragment(BaseModel):
    """An incremental piece of generated text; ``index`` counts from 0."""

    model_config = ConfigDict(frozen=True)

    text: str
    index: int


class StreamEnd(BaseModel):
    """End-of-stream signal carrying the full concatenated answer."""

    model_config = ConfigDict(frozen=True)

    text: str
    finish_reason: FinishReason = "complete"
    fragments: int = 0

    @property
    def truncated(self) -> bool:
        return self.finish_reason != "complete"


StreamEvent = StreamFragment | StreamEnd


class Rejection(BaseModel):
    """A 4xx-equivalent refusal returned instead of an answer stream."""

    model_config = ConfigDict(frozen=True)

    status_code: int = 400
    message: str
