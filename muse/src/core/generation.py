"""
Muse - Generation Streamer
===========================
Streams a model answer for a ``RenderedPrompt`` as ``StreamFragment``s,
followed by one ``StreamEnd``.

Architecture
------------
``CompletionProvider``
    Capability protocol: ``stream_generate(prompt, options)`` yields raw
    text chunks.

``GeminiCompletionProvider``
    Adapter over LangChain's ``ChatGoogleGenerativeAI.astream``.  Applies
    a per-pull timeout and maps provider errors onto the Muse taxonomy.

``GenerationStreamer``
    Pulls one chunk at a time (no read-ahead, so a slow consumer slows
    the provider), numbers fragments, and drives the completion hook.

Completion hook
---------------
Runs exactly once per ``stream()`` call on every terminal path —
complete, interrupted, cancelled, or failed before output — with a
``StreamEnd`` carrying whatever text was delivered.  A failing hook is
logged and ignored.

Cancellation
------------
Closing the stream (``aclose()``) or cancelling the consuming task
closes the provider stream at once, so no orphaned generation keeps
consuming quota.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from muse.config.settings import Settings, settings
from muse.src.core.exceptions import ConfigurationError, GenerationInterrupted, MuseError, ProviderTimeout, ProviderUnavailable
from muse.src.core.models import FinishReason, GenerationOptions, RenderedPrompt, StreamEnd, StreamEvent, StreamFragment
from muse.src.core.prompt_builder import to_langchain_messages
from muse.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type aliases ───────────────────────────────────────────────────────
CompletionHook = Callable[[StreamEnd], Awaitable[None] | None]


# ══════════════════════════════════════════════════════════════════════
#  PROVIDER PROTOCOL
# ══════════════════════════════════════════════════════════════════════


@runtime_checkable
class CompletionProvider(Protocol):
    """Anything that can stream a completion for a rendered prompt."""

    def stream_generate(self, prompt: RenderedPrompt, options: GenerationOptions) -> AsyncIterator[str]: ...


def default_options(config: Settings = settings) -> GenerationOptions:
    """Generation options from configuration."""
    return GenerationOptions(model=config.LLM_MODEL, temperature=config.LLM_TEMPERATURE, max_output_tokens=config.LLM_MAX_OUTPUT_TOKENS)


# ══════════════════════════════════════════════════════════════════════
#  GEMINI ADAPTER
# ══════════════════════════════════════════════════════════════════════


def _chunk_text(chunk: Any) -> str:
    """Extract text from an ``AIMessageChunk`` (string or content-part list)."""
    content = getattr(chunk, "content", chunk)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return ""


def _status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _classify_provider_error(exc: Exception, model: str) -> MuseError:
    """Map a raw provider exception onto the Muse error taxonomy."""
    if _status_code(exc) == 404:
        return ConfigurationError(f"Unknown model identifier '{model}': {exc}")
    return ProviderUnavailable(f"completion provider failed: {exc}")


async def _pull(iterator: AsyncIterator[Any]) -> Any:
    return await iterator.__anext__()


async def _close(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.warning("[GENERATION] Error while closing provider stream.", exc_info=True)


class GeminiCompletionProvider:
    """
    ``CompletionProvider`` backed by ``ChatGoogleGenerativeAI``.

    One chat client is built per distinct ``GenerationOptions`` and reused
    across requests.

    Parameters
    ----------
    llm_factory
        ``options -> chat model`` callable.  Defaults to building a
        ``ChatGoogleGenerativeAI`` from settings; tests inject fakes.
    timeout
        Seconds allowed for the first chunk and between chunks.
    """

    __slots__ = ("_llm_factory", "_timeout", "_clients")

    def __init__(self, llm_factory: Callable[[GenerationOptions], Any] | None = None, timeout: float | None = None) -> None:
        self._llm_factory = llm_factory or self._build_llm
        self._timeout: float = timeout or settings.GENERATION_TIMEOUT_SECONDS
        self._clients: dict[GenerationOptions, Any] = {}


    @staticmethod
    def _build_llm(options: GenerationOptions) -> Any:
        """Initialise the Gemini chat model via LangChain."""
        from langchain_google_genai import ChatGoogleGenerativeAI

        llm = ChatGoogleGenerativeAI(model=options.model, temperature=options.temperature, max_output_tokens=options.max_output_tokens, max_retries=settings.PROVIDER_MAX_RETRIES, google_api_key=settings.GOOGLE_API_KEY.get_secret_value())
        logger.info("LLM initialised: %s (temperature=%.1f, max_output_tokens=%d)", options.model, options.temperature, options.max_output_tokens)
        return llm


    def _llm_for(self, options: GenerationOptions) -> Any:
        if options not in self._clients:
            self._clients[options] = self._llm_factory(options)
        return self._clients[options]


    async def stream_generate(self, prompt: RenderedPrompt, options: GenerationOptions) -> AsyncIterator[str]:
        """
        Yield raw text chunks from the model.

        Raises
        ------
        ProviderTimeout
            When no chunk arrives within the timeout.
        ProviderUnavailable
            On any other provider error.
        ConfigurationError
            When the provider does not know the model.
        """
        iterator = self._llm_for(options).astream(to_langchain_messages(prompt)).__aiter__()
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(_pull(iterator), timeout=self._timeout)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as exc:
                    raise ProviderTimeout(f"no output from '{options.model}' within {self._timeout:.1f}s") from exc
                except Exception as exc:
                    raise _classify_provider_error(exc, options.model) from exc

                text = _chunk_text(chunk)
                if text:
                    yield text
        finally:
            await _close(iterator)


class StaticCompletionProvider:
    """``CompletionProvider`` that streams a fixed answer without calling a model."""

    __slots__ = ("_text",)

    def __init__(self, text: str) -> None:
        self._text = text


    async def stream_generate(self, prompt: RenderedPrompt, options: GenerationOptions) -> AsyncIterator[str]:
        yield self._text


# ══════════════════════════════════════════════════════════════════════
#  STREAMER
# ══════════════════════════════════════════════════════════════════════


async def log_completion(end: StreamEnd) -> None:
    """Default completion hook: record the finished answer."""
    logger.info("[GENERATION] Stream finished (%s). Final text: %d chars in %d fragment(s).", end.finish_reason, len(end.text), end.fragments)
    logger.debug("[GENERATION] Final text: %s", end.text)


async def run_hook(hook: CompletionHook | None, end: StreamEnd) -> None:
    """Invoke ``hook`` (sync or async), isolating any failure."""
    if hook is None:
        return
    try:
        result = hook(end)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("[GENERATION] Completion hook failed — delivered stream is unaffected.")


class GenerationStreamer:
    """
    Turns a ``CompletionProvider`` stream into numbered fragments.

    Parameters
    ----------
    provider
        Shared ``CompletionProvider``; never closed by the streamer.
    """

    __slots__ = ("_provider",)

    def __init__(self, provider: CompletionProvider) -> None:
        self._provider = provider


    async def stream(self, prompt: RenderedPrompt, options: GenerationOptions, on_finish: CompletionHook | None = None) -> AsyncIterator[StreamEvent]:
        """
        Yield ``StreamFragment``s in generation order, then one ``StreamEnd``.

        Single pass and not restartable: call again to regenerate.

        Raises
        ------
        ProviderUnavailable / ProviderTimeout / ConfigurationError
            If generation fails before the first fragment.
        GenerationInterrupted
            If generation fails after at least one fragment.
        """
        t_start = time.perf_counter()
        parts: list[str] = []
        finish_reason: FinishReason = "failed"
        iterator: AsyncIterator[str] | None = None

        try:
            while True:
                try:
                    if iterator is None:
                        iterator = self._provider.stream_generate(prompt, options).__aiter__()
                    piece = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as exc:
                    if parts:
                        finish_reason = "interrupted"
                        logger.warning("[GENERATION] Interrupted after %d fragment(s): %s", len(parts), exc)
                        raise GenerationInterrupted("".join(parts), exc) from exc
                    logger.error("[GENERATION] Failed before any output: %s", exc)
                    if isinstance(exc, MuseError):
                        raise
                    raise ProviderUnavailable(f"completion provider failed: {exc}") from exc

                if not piece:
                    continue
                parts.append(piece)
                yield StreamFragment(text=piece, index=len(parts) - 1)

            finish_reason = "complete"
        except (GeneratorExit, asyncio.CancelledError):
            finish_reason = "cancelled"
            logger.info("[GENERATION] Cancelled by consumer after %d fragment(s).", len(parts))
            raise
        finally:
            if iterator is not None:
                await _close(iterator)
            end = StreamEnd(text="".join(parts), finish_reason=finish_reason, fragments=len(parts))
            await run_hook(on_finish, end)
            logger.info("[GENERATION] %s: %d chars in %.1fms (model=%s)", finish_reason, len(end.text), (time.perf_counter() - t_start) * 1000, options.model)

        yield end
