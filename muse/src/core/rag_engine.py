"""
Muse - RAG Engine
==================
Top-level entry point: validates the query, then drives
Retriever → Prompt Assembler → Generation Streamer and relays the
answer to the caller fragment by fragment.

State machine
-------------
``VALIDATING → RETRIEVING → ASSEMBLING → GENERATING → DONE``, with
``REJECTED`` reachable only from ``VALIDATING``.

Failure policy
--------------
- ``InvalidInput``: raised before any external call (cost control).
- ``RetrievalFailed``: absorbed by the Retriever; generation proceeds
  with the no-context marker.
- ``ProviderUnavailable`` / ``ProviderTimeout``: surfaced — there is no
  content to degrade to.
- ``GenerationInterrupted``: the partial answer stands, followed by a
  ``TRUNCATION_MARKER`` fragment and a ``StreamEnd`` with
  ``finish_reason="interrupted"``.
- The whole request is bounded by ``PIPELINE_TIMEOUT_SECONDS``.  Expiry
  before any output raises ``PipelineTimeout``; after output it is
  handled like an interruption.  An answer whose last fragment was
  already delivered still gets its ``StreamEnd`` (``"complete"``) when
  the end arrives within ``_END_GRACE_SECONDS`` of the deadline.

Concurrency
-----------
``RAGPipeline`` holds only shared read-only collaborators; all
per-request state lives in the ``handle()`` generator frame and its
``PipelineRun``, so one instance serves any number of concurrent
requests.

Usage:
    from muse.src.core.rag_engine import RAGPipeline
    pipeline = resources.pipeline()
    async for event in pipeline.handle("What is the capital of France?"):
        ...
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from enum import Enum

from muse.config.prompt_templates import INVALID_QUERY_MESSAGE, NO_CONTEXT_RESPONSE, TRUNCATION_MARKER
from muse.config.settings import settings
from muse.src.core.exceptions import GenerationInterrupted, InvalidInput, PipelineTimeout
from muse.src.core.generation import CompletionHook, GenerationStreamer, StaticCompletionProvider, default_options, log_completion
from muse.src.core.models import ContextBundle, GenerationOptions, Rejection, StreamEnd, StreamEvent, StreamFragment
from muse.src.core.prompt_builder import assemble
from muse.src.core.retriever import Retriever
from muse.src.utils.logger import get_logger

logger = get_logger(__name__)

_run_ids = itertools.count(1)
_END_GRACE_SECONDS = 0.05


class PipelineState(str, Enum):
    VALIDATING = "validating"
    RETRIEVING = "retrieving"
    ASSEMBLING = "assembling"
    GENERATING = "generating"
    DONE = "done"
    REJECTED = "rejected"


class PipelineRun:
    """Per-request bookkeeping: id, current state, start time."""

    __slots__ = ("run_id", "state", "t_start")

    def __init__(self) -> None:
        self.run_id: int = next(_run_ids)
        self.state: PipelineState = PipelineState.VALIDATING
        self.t_start: float = time.perf_counter()

    def advance(self, state: PipelineState) -> None:
        logger.debug("[PIPELINE] run=%d %s → %s", self.run_id, self.state.value, state.value)
        self.state = state

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.t_start) * 1000


def validate_query(raw_query: object) -> str:
    """
    Return the stripped query, or raise ``InvalidInput``.

    Rejects ``None``, non-strings and strings that are empty after trim.
    """
    if not isinstance(raw_query, str):
        raise InvalidInput(INVALID_QUERY_MESSAGE)
    query = raw_query.strip()
    if not query:
        raise InvalidInput(INVALID_QUERY_MESSAGE)
    return query


def _interruption(partial: list[str]) -> tuple[StreamFragment, StreamEnd]:
    """The truncation marker fragment and the end signal for a cut-short answer."""
    marker = StreamFragment(text=TRUNCATION_MARKER, index=len(partial))
    return marker, StreamEnd(text="".join(partial), finish_reason="interrupted", fragments=len(partial))


async def _next_event(events: AsyncIterator[StreamEvent]) -> StreamEvent:
    return await events.__anext__()


class RAGPipeline:
    """
    Orchestrates one answer per ``handle()`` call.

    Parameters
    ----------
    retriever
        Shared ``Retriever``.
    streamer
        Shared ``GenerationStreamer``.
    options
        Generation options.  Defaults to the configured model parameters.
    k
        Passages to retrieve.  Defaults to ``settings.RETRIEVAL_K``.
    max_chars
        Optional context budget.  Defaults to ``settings.CONTEXT_MAX_CHARS``.
    no_context_policy
        ``"generate"`` still calls the model when nothing was retrieved;
        ``"canned"`` answers with ``NO_CONTEXT_RESPONSE`` instead.
    timeout
        Whole-request deadline in seconds.
    on_finish
        Completion hook; defaults to logging the finished answer.
    """

    __slots__ = ("_retriever", "_streamer", "_options", "_k", "_max_chars", "_no_context_policy", "_timeout", "_on_finish")

    def __init__(self, retriever: Retriever, streamer: GenerationStreamer, options: GenerationOptions | None = None, k: int | None = None, max_chars: int | None = None, no_context_policy: str | None = None, timeout: float | None = None, on_finish: CompletionHook | None = log_completion) -> None:
        self._retriever = retriever
        self._streamer = streamer
        self._options: GenerationOptions = options or default_options()
        self._k: int = k or settings.RETRIEVAL_K
        self._max_chars: int | None = max_chars if max_chars is not None else settings.CONTEXT_MAX_CHARS
        self._no_context_policy: str = no_context_policy or settings.NO_CONTEXT_POLICY
        self._timeout: float = timeout or settings.PIPELINE_TIMEOUT_SECONDS
        self._on_finish = on_finish

        if self._no_context_policy not in ("generate", "canned"):
            raise ValueError(f"no_context_policy must be 'generate' or 'canned', got {self._no_context_policy!r}")


    def respond(self, raw_query: object) -> Rejection | AsyncIterator[str]:
        """
        Entry point for a request-handling layer.

        Returns a ``Rejection`` (4xx-equivalent) for invalid input, otherwise
        an async iterator of text chunks suitable for chunked transfer.
        """
        try:
            validate_query(raw_query)
        except InvalidInput as exc:
            logger.info("[PIPELINE] Rejected query (%d): %s", exc.status_code, exc)
            return Rejection(status_code=exc.status_code, message=str(exc))
        return self._text_chunks(raw_query)


    async def _text_chunks(self, raw_query: object) -> AsyncIterator[str]:
        async with aclosing(self.handle(raw_query)) as events:
            async for event in events:
                if isinstance(event, StreamFragment):
                    yield event.text


    async def handle(self, raw_query: object) -> AsyncIterator[StreamEvent]:
        """
        Run the pipeline, yielding ``StreamFragment``s then one ``StreamEnd``.

        Raises
        ------
        InvalidInput
            On the first iteration, before any retrieval or model call.
        PipelineTimeout
            If the request deadline expires before any output.
        ProviderUnavailable / ProviderTimeout
            If generation fails before any output.
        ConfigurationError
            On a dimensionality mismatch or unknown model.
        """
        run = PipelineRun()

        # ── 1. Validate ───────────────────────────────────────────────
        try:
            query = validate_query(raw_query)
        except InvalidInput:
            run.advance(PipelineState.REJECTED)
            logger.info("[PIPELINE] run=%d rejected: invalid query.", run.run_id)
            raise

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout

        # ── 2. Retrieve ───────────────────────────────────────────────
        run.advance(PipelineState.RETRIEVING)
        try:
            result = await asyncio.wait_for(self._retriever.retrieve(query, self._k), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error("[PIPELINE] run=%d timed out during retrieval after %.1fms.", run.run_id, run.elapsed_ms)
            raise PipelineTimeout(f"request exceeded {self._timeout:.1f}s during retrieval") from exc

        # ── 3. Assemble ───────────────────────────────────────────────
        run.advance(PipelineState.ASSEMBLING)
        bundle = ContextBundle.from_result(result)
        prompt = assemble(bundle, query, max_chars=self._max_chars)
        logger.info("[PROMPT] run=%d %d passage(s), %d prompt chars%s.", run.run_id, len(bundle.passages), len(prompt.text), " (retrieval failed)" if result.failed else "")

        streamer = self._streamer
        if bundle.is_empty and self._no_context_policy == "canned":
            logger.info("[PIPELINE] run=%d no context — answering with canned response.", run.run_id)
            streamer = GenerationStreamer(StaticCompletionProvider(NO_CONTEXT_RESPONSE))

        # ── 4. Generate ───────────────────────────────────────────────
        run.advance(PipelineState.GENERATING)
        events = streamer.stream(prompt, self._options, on_finish=self._on_finish)
        delivered: list[str] = []
        try:
            while True:
                remaining = deadline - loop.time()
                overdue = remaining <= 0
                try:
                    if overdue and not delivered:
                        raise asyncio.TimeoutError
                    # Past the deadline a stream that already finished may still report its end
                    event = await asyncio.wait_for(_next_event(events), timeout=_END_GRACE_SECONDS if overdue else remaining)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as exc:
                    logger.warning("[PIPELINE] run=%d deadline of %.1fs reached after %d fragment(s).", run.run_id, self._timeout, len(delivered))
                    if not delivered:
                        raise PipelineTimeout(f"request exceeded {self._timeout:.1f}s before any output") from exc
                    for tail in _interruption(delivered):
                        yield tail
                    break
                except GenerationInterrupted as exc:
                    logger.warning("[PIPELINE] run=%d answer truncated after %d chars.", run.run_id, len(exc.partial_text))
                    for tail in _interruption(delivered):
                        yield tail
                    break

                if isinstance(event, StreamFragment):
                    delivered.append(event.text)
                yield event
                if overdue and isinstance(event, StreamFragment):
                    logger.warning("[PIPELINE] run=%d deadline of %.1fs reached after %d fragment(s).", run.run_id, self._timeout, len(delivered))
                    for tail in _interruption(delivered):
                        yield tail
                    break
        finally:
            await events.aclose()

        # ── 5. Done ───────────────────────────────────────────────────
        run.advance(PipelineState.DONE)
        logger.info("[PIPELINE] run=%d done: %d fragment(s) in %.1fms.", run.run_id, len(delivered), run.elapsed_ms)
