"""
Muse - Prompt Assembler
========================
Renders the grounding prompt from a ``ContextBundle`` and the query.

``assemble`` is a pure function: no I/O, no clock, no randomness.  The
same bundle and query always produce a byte-identical ``RenderedPrompt``.
"""

from __future__ import annotations

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from muse.config.prompt_templates import CONTEXT_END, CONTEXT_START, NO_CONTEXT_MARKER, SYSTEM_PROMPT, USER_PROMPT_TEMPLATE
from muse.src.core.models import ContextBundle, PromptMessage, RenderedPrompt


def assemble(bundle: ContextBundle, query: str, max_chars: int | None = None) -> RenderedPrompt:
    """
    Build the two-message grounding prompt.

    Args:
        bundle:    Retrieved passages, most similar first.
        query:     The validated user query, inserted literally.
        max_chars: Optional budget for the context text.  Passages are
                   dropped from the end (lowest similarity first) until it
                   fits; a passage is never cut in half.

    Returns:
        ``RenderedPrompt`` with a system instruction block followed by a
        user message holding the delimited context, the question and the
        answer cue.
    """
    if max_chars is not None:
        bundle = bundle.fit(max_chars)

    context = NO_CONTEXT_MARKER if bundle.is_empty else bundle.text
    user_content = USER_PROMPT_TEMPLATE.format(context_start=CONTEXT_START, context=context, context_end=CONTEXT_END, question=query)

    return RenderedPrompt(messages=(PromptMessage(role="system", content=SYSTEM_PROMPT), PromptMessage(role="user", content=user_content)))


def to_langchain_messages(prompt: RenderedPrompt) -> list[BaseMessage]:
    """Convert a ``RenderedPrompt`` into LangChain chat messages."""
    messages: list[BaseMessage] = []
    for message in prompt.messages:
        if message.role == "system":
            messages.append(SystemMessage(content=message.content))
        else:
            messages.append(HumanMessage(content=message.content))
    return messages
