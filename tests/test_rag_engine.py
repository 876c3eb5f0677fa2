"""Tests for the pipeline orchestrator."""

from __future__ import annotations

import asyncio

import pytest

from conftest import DIM, FakeCompletionProvider, FakeEmbeddingClient, FakeVectorIndex, collect, make_pipeline, paris_hit
from muse.config.prompt_templates import CONTEXT_END, CONTEXT_START, NO_CONTEXT_MARKER, NO_CONTEXT_RESPONSE, TRUNCATION_MARKER
from muse.src.core.exceptions import ConfigurationError, IndexUnavailable, InvalidInput, PipelineTimeout, ProviderUnavailable
from muse.src.core.models import Rejection, SearchHit, StreamEnd, StreamFragment
from muse.src.core.rag_engine import RAGPipeline, validate_query

QUERY = "What is the capital of France?"


def _user_message(provider: FakeCompletionProvider) -> str:
    prompt, _ = provider.calls[0]
    return prompt.messages[1].content


def _context_block(content: str) -> str:
    return content[content.index(CONTEXT_START) + len(CONTEXT_START):content.index(CONTEXT_END)].strip()


class TestValidateQuery:
    def test_strips_whitespace(self) -> None:
        assert validate_query("  hello  ") == "hello"

    @pytest.mark.parametrize("raw", ["", "   ", "\n\t", None, 42, b"bytes"])
    def test_rejects_invalid(self, raw: object) -> None:
        with pytest.raises(InvalidInput) as exc_info:
            validate_query(raw)
        assert exc_info.value.status_code == 400


class TestInvalidInput:
    @pytest.mark.parametrize("raw", ["", "   ", None])
    async def test_no_external_calls(self, raw: object) -> None:
        pipeline, embedder, index, provider, hook = make_pipeline(hits=[paris_hit()])
        with pytest.raises(InvalidInput):
            await collect(pipeline.handle(raw))
        assert embedder.calls == []
        assert index.calls == []
        assert provider.calls == []
        assert hook.calls == []

    async def test_respond_returns_rejection(self) -> None:
        pipeline, embedder, _, provider, _ = make_pipeline()
        response = pipeline.respond("   ")
        assert isinstance(response, Rejection)
        assert response.status_code == 400
        assert response.message == "Invalid query"
        assert embedder.calls == []
        assert provider.calls == []


class TestHappyPath:
    async def test_paris_answer(self) -> None:
        pipeline, embedder, index, provider, hook = make_pipeline(hits=[paris_hit()])
        events = await collect(pipeline.handle(QUERY))

        fragments = [e for e in events if isinstance(e, StreamFragment)]
        assert "".join(f.text for f in fragments) == "Paris is the capital."
        assert [f.index for f in fragments] == [0, 1, 2]
        assert isinstance(events[-1], StreamEnd)
        assert events[-1].text == "Paris is the capital."
        assert events[-1].finish_reason == "complete"

        assert embedder.calls == [QUERY]
        assert index.calls[0][1] == 4
        assert _context_block(_user_message(provider)) == "Paris is the capital of France."
        assert len(hook.calls) == 1
        assert hook.calls[0].text == "Paris is the capital."

    async def test_query_is_trimmed_before_embedding(self) -> None:
        pipeline, embedder, _, provider, _ = make_pipeline(hits=[paris_hit()])
        await collect(pipeline.handle(f"   {QUERY}\n"))
        assert embedder.calls == [QUERY]
        assert f"User Question: {QUERY}\n" in _user_message(provider)

    async def test_respond_streams_text_chunks(self) -> None:
        pipeline, *_ = make_pipeline(hits=[paris_hit()])
        chunks = pipeline.respond(QUERY)
        assert not isinstance(chunks, Rejection)
        assert "".join([c async for c in chunks]) == "Paris is the capital."

    async def test_passages_ordered_by_score(self) -> None:
        hits = [SearchHit(text="low", score=0.1), SearchHit(text="high", score=0.9), SearchHit(text="mid", score=0.5)]
        pipeline, _, _, provider, _ = make_pipeline(hits=hits)
        await collect(pipeline.handle(QUERY))
        context = _context_block(_user_message(provider))
        assert context.index("high") < context.index("mid") < context.index("low")

    async def test_k_and_max_chars_are_passed_through(self) -> None:
        hits = [SearchHit(text="a" * 30, score=0.9), SearchHit(text="b" * 30, score=0.8), SearchHit(text="c" * 30, score=0.7)]
        pipeline, _, index, provider, _ = make_pipeline(hits=hits, k=2, max_chars=40)
        await collect(pipeline.handle(QUERY))
        assert index.calls[0][1] == 2
        context = _context_block(_user_message(provider))
        assert context == "a" * 30

    async def test_generation_options_reach_provider(self) -> None:
        pipeline, _, _, provider, _ = make_pipeline(hits=[paris_hit()])
        await collect(pipeline.handle(QUERY))
        _, options = provider.calls[0]
        assert options.model == "test-model"
        assert options.temperature == 0.7


class TestRetrievalDegradation:
    async def test_index_error_uses_no_context_marker(self, muse_logs: pytest.LogCaptureFixture) -> None:
        pipeline, _, _, provider, hook = make_pipeline(index_error=IndexUnavailable("connection refused"))
        events = await collect(pipeline.handle(QUERY))
        assert _context_block(_user_message(provider)) == NO_CONTEXT_MARKER
        assert events[-1].text == "Paris is the capital."
        assert hook.calls[0].finish_reason == "complete"
        assert "RetrievalFailed" in muse_logs.text

    async def test_zero_hits_uses_no_context_marker(self) -> None:
        pipeline, _, _, provider, _ = make_pipeline(hits=[])
        events = await collect(pipeline.handle(QUERY))
        assert _context_block(_user_message(provider)) == NO_CONTEXT_MARKER
        assert events[-1].finish_reason == "complete"

    async def test_canned_policy_skips_the_model(self) -> None:
        pipeline, _, _, provider, hook = make_pipeline(hits=[], no_context_policy="canned")
        events = await collect(pipeline.handle(QUERY))
        assert provider.calls == []
        assert events[-1].text == NO_CONTEXT_RESPONSE
        assert hook.calls[0].text == NO_CONTEXT_RESPONSE

    async def test_canned_policy_with_context_still_generates(self) -> None:
        pipeline, _, _, provider, _ = make_pipeline(hits=[paris_hit()], no_context_policy="canned")
        await collect(pipeline.handle(QUERY))
        assert len(provider.calls) == 1

    def test_unknown_policy_rejected(self) -> None:
        with pytest.raises(ValueError):
            make_pipeline(no_context_policy="shrug")

    async def test_dimension_mismatch_is_not_degraded(self) -> None:
        embedder = FakeEmbeddingClient(dimensions=DIM + 1)
        pipeline, _, index, provider, _ = make_pipeline(hits=[paris_hit()], embedder=embedder)
        with pytest.raises(ConfigurationError):
            await collect(pipeline.handle(QUERY))
        assert index.calls == []
        assert provider.calls == []


class TestGenerationFailures:
    async def test_interruption_keeps_partial_answer(self) -> None:
        provider = FakeCompletionProvider(fail_at=2)
        pipeline, _, _, _, hook = make_pipeline(hits=[paris_hit()], provider=provider)
        events = await collect(pipeline.handle(QUERY))

        fragments = [e for e in events if isinstance(e, StreamFragment)]
        assert [f.text for f in fragments] == ["Par", "is is", TRUNCATION_MARKER]
        assert fragments[-1].index == 2
        end = events[-1]
        assert isinstance(end, StreamEnd)
        assert end.text == "Paris is"
        assert end.finish_reason == "interrupted"
        assert hook.calls[0].text == "Paris is"
        assert hook.calls[0].finish_reason == "interrupted"

    async def test_provider_failure_before_output(self) -> None:
        provider = FakeCompletionProvider(fail_at=0)
        pipeline, _, _, _, hook = make_pipeline(hits=[paris_hit()], provider=provider)
        with pytest.raises(ProviderUnavailable):
            await collect(pipeline.handle(QUERY))
        assert len(hook.calls) == 1
        assert hook.calls[0].text == ""
        assert hook.calls[0].finish_reason == "failed"

    async def test_hook_failure_does_not_break_stream(self) -> None:
        def broken_hook(end: StreamEnd) -> None:
            raise RuntimeError("hook down")

        pipeline, _, _, _, recorder = make_pipeline(hits=[paris_hit()], on_finish=broken_hook)
        events = await collect(pipeline.handle(QUERY))
        assert events[-1].text == "Paris is the capital."
        assert recorder.calls == []


class TestDeadlines:
    async def test_timeout_before_output(self) -> None:
        provider = FakeCompletionProvider(delays={0: 1.0})
        pipeline, _, _, _, hook = make_pipeline(hits=[paris_hit()], provider=provider, timeout=0.05)
        with pytest.raises(PipelineTimeout):
            await collect(pipeline.handle(QUERY))
        assert provider.closed
        assert hook.calls[0].text == ""
        assert hook.calls[0].finish_reason == "cancelled"

    async def test_timeout_after_output_is_an_interruption(self) -> None:
        provider = FakeCompletionProvider(delays={1: 1.0})
        pipeline, _, _, _, hook = make_pipeline(hits=[paris_hit()], provider=provider, timeout=0.2)
        events = await collect(pipeline.handle(QUERY))

        assert [e.text for e in events if isinstance(e, StreamFragment)] == ["Par", TRUNCATION_MARKER]
        assert events[-1].text == "Par"
        assert events[-1].finish_reason == "interrupted"
        assert provider.closed
        assert hook.calls[0].text == "Par"

    async def test_finished_answer_completes_after_slow_consumer(self) -> None:
        pipeline, _, _, provider, hook = make_pipeline(hits=[paris_hit()], timeout=0.1)
        events = []
        async for event in pipeline.handle(QUERY):
            events.append(event)
            if isinstance(event, StreamFragment) and event.text == " the capital.":
                await asyncio.sleep(0.2)

        assert TRUNCATION_MARKER not in [e.text for e in events if isinstance(e, StreamFragment)]
        assert events[-1].text == "Paris is the capital."
        assert events[-1].finish_reason == "complete"
        assert provider.closed
        assert hook.calls[0].finish_reason == "complete"

    async def test_unfinished_answer_is_cut_after_slow_consumer(self) -> None:
        pipeline, *_ = make_pipeline(hits=[paris_hit()], timeout=0.1)
        events = []
        async for event in pipeline.handle(QUERY):
            events.append(event)
            if isinstance(event, StreamFragment) and event.text == "Par":
                await asyncio.sleep(0.2)

        assert [e.text for e in events if isinstance(e, StreamFragment)] == ["Par", "is is", TRUNCATION_MARKER]
        assert events[-1].text == "Paris is"
        assert events[-1].finish_reason == "interrupted"

    async def test_timeout_during_retrieval(self) -> None:
        embedder = FakeEmbeddingClient(delay=1.0)
        pipeline, _, _, provider, hook = make_pipeline(hits=[paris_hit()], embedder=embedder, timeout=0.05)
        with pytest.raises(PipelineTimeout):
            await collect(pipeline.handle(QUERY))
        assert provider.calls == []
        assert hook.calls == []


class TestCancellation:
    async def test_consumer_close_stops_the_provider(self) -> None:
        pipeline, _, _, provider, hook = make_pipeline(hits=[paris_hit()])
        events = pipeline.handle(QUERY)
        first = await events.__anext__()
        assert first.text == "Par"
        await events.aclose()

        assert provider.closed
        assert provider.pulled == 1
        assert len(hook.calls) == 1
        assert hook.calls[0].finish_reason == "cancelled"
        assert hook.calls[0].text == "Par"

    async def test_task_cancellation(self) -> None:
        provider = FakeCompletionProvider(delays={1: 5.0})
        pipeline, _, _, _, hook = make_pipeline(hits=[paris_hit()], provider=provider)
        received: list[str] = []

        async def consume() -> None:
            async for event in pipeline.handle(QUERY):
                if isinstance(event, StreamFragment):
                    received.append(event.text)

        task = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert received == ["Par"]
        assert provider.closed
        assert hook.calls[0].finish_reason == "cancelled"


class TestConcurrency:
    async def test_concurrent_requests_do_not_mix(self) -> None:
        pipeline, _, _, provider, hook = make_pipeline(hits=[paris_hit()])
        queries = [f"question number {i}" for i in range(5)]
        results = await asyncio.gather(*(collect(pipeline.handle(q)) for q in queries))

        for events in results:
            assert events[-1].text == "Paris is the capital."
        asked = sorted(prompt.messages[1].content.split("User Question: ")[1].split("\n")[0] for prompt, _ in provider.calls)
        assert asked == sorted(queries)
        assert len(hook.calls) == 5


class TestDefaults:
    def test_defaults_from_settings(self) -> None:
        from muse.config.settings import settings
        from muse.src.core.generation import GenerationStreamer
        from muse.src.core.retriever import Retriever

        pipeline = RAGPipeline(Retriever(FakeEmbeddingClient(), FakeVectorIndex()), GenerationStreamer(FakeCompletionProvider()))
        assert pipeline._k == settings.RETRIEVAL_K
        assert pipeline._timeout == settings.PIPELINE_TIMEOUT_SECONDS
        assert pipeline._options.model == settings.LLM_MODEL
