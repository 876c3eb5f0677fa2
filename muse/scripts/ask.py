"""
Muse - Ask from the Command Line
=================================
CLI entry point that:
    1. Loads settings (fail-fast on missing credentials).
    2. Opens the shared clients once.
    3. Streams a grounded answer to stdout as it is generated.
    4. Closes the shared clients on exit.

Flags:
    --k N             Passages to retrieve (default: ``RETRIEVAL_K``).
    --retrieve-only   Print the ranked passages instead of generating.
    -q / -v           Quieter / more verbose logging (logs go to stderr).

Ctrl-C cancels the stream: the model call is closed and the completion
hook still records the partial answer.

Exit codes: 0 ok, 1 configuration/provider error, 2 invalid query,
130 interrupted.

Usage:
    python -m muse.scripts.ask "What is the capital of France?"
    python -m muse.scripts.ask "Who won in 1998?" --k 8
    python -m muse.scripts.ask "Who won in 1998?" --retrieve-only
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from muse.src.core.models import RetrievalResult


# ── CLI Argument Parsing ───────────────────────────────────────────────

def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be ≥ 1, got {number}")
    return number


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ask", description="Muse — answer a question from the vector index, streamed.")
    parser.add_argument("query", help="The natural-language question.")
    parser.add_argument("--k", type=_positive_int, default=None, help="Number of passages to retrieve (default: RETRIEVAL_K).")
    parser.add_argument("--retrieve-only", action="store_true", default=False, help="Print the ranked passages and exit (no generation).")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-q", "--quiet", action="store_true", default=False, help="Only log warnings and errors.")
    verbosity.add_argument("-v", "--verbose", action="store_true", default=False, help="Log everything, including prompt sizes and state transitions.")
    return parser.parse_args(argv)


# ── Main Orchestration ─────────────────────────────────────────────────

async def _run(args: argparse.Namespace) -> int:
    from muse.config.settings import settings
    from muse.src.core.exceptions import ConfigurationError, InvalidInput, MuseError
    from muse.src.core.models import StreamEnd, StreamFragment
    from muse.src.core.rag_engine import validate_query
    from muse.src.core.resources import SharedResources
    from muse.src.core.retriever import Retriever
    from muse.src.utils.logger import get_logger, set_level

    logger = get_logger(__name__)
    if args.quiet:
        set_level(logging.WARNING)
    elif args.verbose:
        set_level(logging.DEBUG)

    t_open = time.perf_counter()
    try:
        resources = SharedResources.open()
    except ConfigurationError as exc:
        print(f"\n[FATAL] {exc}\n", file=sys.stderr)
        return 1
    logger.info("Shared clients opened in %.1fms", (time.perf_counter() - t_open) * 1000)

    async with resources:
        try:
            query = validate_query(args.query)
        except InvalidInput as exc:
            print(f"[{exc.status_code}] {exc}", file=sys.stderr)
            return 2

        if args.retrieve_only:
            result = await Retriever(resources.embedder, resources.index).retrieve(query, args.k if args.k is not None else settings.RETRIEVAL_K)
            _print_hits(query, result)
            return 1 if result.failed else 0

        overrides = {"k": args.k} if args.k is not None else {}
        pipeline = resources.pipeline(**overrides)
        try:
            async for event in pipeline.handle(query):
                if isinstance(event, StreamFragment):
                    sys.stdout.write(event.text)
                    sys.stdout.flush()
                elif isinstance(event, StreamEnd):
                    sys.stdout.write("\n")
        except MuseError as exc:
            print(f"\n[ERROR] {type(exc).__name__}: {exc}", file=sys.stderr)
            return 1

    return 0


def _print_hits(query: str, result: RetrievalResult) -> None:
    print()
    print("=" * 60)
    print(f"  Query : {query}")
    print(f"  Hits  : {len(result)} (k={result.k})")
    if result.failed:
        print(f"  Error : {result.error}")
    print("=" * 60)
    for i, hit in enumerate(result.passages, 1):
        print(f"\n--- Result {i} (score {hit.score:.4f}) ---")
        print(f"  {hit.text}")
    print()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    # ── Load settings + .env ───────────────────────────────────────────
    try:
        from muse.config.settings import settings  # noqa: F401
    except Exception as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n", file=sys.stderr)
        print(f"  {exc}\n", file=sys.stderr)
        sys.exit(1)

    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("\n[interrupted]", file=sys.stderr)
        code = 130
    sys.exit(code)


# ── Entry point ────────────────────────────────────────────────────────

if __name__ == "__main__":
    main()
