"""
Muse - Prompt Templates
========================
Centralised prompt text and delimiters for the grounding prompt.  All
prompt wording lives here so it can be versioned and reviewed
independently of application logic.

Nothing in this module may depend on time, randomness or the
environment: the rendered prompt must be byte-identical for identical
inputs.

Exports
-------
SYSTEM_PROMPT, USER_PROMPT_TEMPLATE,
CONTEXT_START, CONTEXT_END, PASSAGE_SEPARATOR, NO_CONTEXT_MARKER,
NO_CONTEXT_RESPONSE, TRUNCATION_MARKER, INVALID_QUERY_MESSAGE.
"""

# ══════════════════════════════════════════════════════════════════════
#  DELIMITERS
# ══════════════════════════════════════════════════════════════════════
# Box-drawing markers do not occur in ordinary prose, so a passage
# boundary can always be told apart from passage text.  Any accidental
# occurrence inside a passage is neutralised by ``ContextBundle``.

CONTEXT_START: str = "══════ CONTEXT START ══════"
CONTEXT_END: str = "══════ CONTEXT END ══════"
PASSAGE_DELIMITER: str = "────── ✂ ──────"
PASSAGE_SEPARATOR: str = f"\n\n{PASSAGE_DELIMITER}\n\n"

NO_CONTEXT_MARKER: str = "(No relevant context found.)"


# ══════════════════════════════════════════════════════════════════════
#  SYSTEM PROMPT
# ══════════════════════════════════════════════════════════════════════

SYSTEM_PROMPT: str = """You are a helpful assistant. Answer the user's question using ONLY the context supplied between the context markers.
Reason step-by-step before providing the final answer.
If the context is missing or does not contain the answer, say so explicitly instead of guessing.
Never invent facts that are not present in the context."""


# ══════════════════════════════════════════════════════════════════════
#  USER PROMPT TEMPLATE
# ══════════════════════════════════════════════════════════════════════

USER_PROMPT_TEMPLATE: str = """{context_start}
{context}
{context_end}

User Question: {question}

Answer:"""


# ══════════════════════════════════════════════════════════════════════
#  FALLBACKS & MARKERS
# ══════════════════════════════════════════════════════════════════════

NO_CONTEXT_RESPONSE: str = "I could not find any relevant information to answer this question."

TRUNCATION_MARKER: str = "\n\n[… answer truncated: generation was interrupted]"

INVALID_QUERY_MESSAGE: str = "Invalid query"
