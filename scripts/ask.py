#!/usr/bin/env python3
"""
Ask a question against a project's knowledge graph from the terminal.

Usage:
    # Local retrieval, blocking
    python scripts/ask.py <project-id> "Who founded Acme?"

    # Agentic retrieval, streamed as it is generated
    python scripts/ask.py <project-id> "How are the suppliers connected?" --mode agentic --stream

    # Show what the query looked at
    python scripts/ask.py <project-id> "What does Acme build?" --trace

Requirements:
    - Database must be running with an indexed project
    - AI provider configured (AI_PROVIDER, OPENAI_API_KEY or OLLAMA_BASE_URL)
"""

import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.core.exceptions import RetrievalError  # noqa: E402
from src.core.logging import setup_logging  # noqa: E402
from src.db import dispose_engine, get_db_context  # noqa: E402
from src.services.ai_client import ChatMessage, StreamEventType, get_ai_client  # noqa: E402
from src.services.citations import CitationStreamParser  # noqa: E402
from src.services.graph_store import GraphStore  # noqa: E402
from src.services.query_engine import QueryEngine, QueryMode  # noqa: E402


def _print(text: str) -> None:
    print(text, end="", flush=True)


async def ask(project_id: uuid.UUID, question: str, mode: QueryMode, stream: bool, show_trace: bool) -> int:
    citations: list[str] = []
    messages = [ChatMessage(role="user", content=question)]

    async with get_ai_client() as ai, get_db_context() as db:
        store = GraphStore(db)
        if not await store.graph_exists(project_id):
            print(f"Error: project {project_id} not found")
            return 1

        engine = QueryEngine(ai, store, project_id)
        parser = CitationStreamParser()
        try:
            if stream:
                async for event in engine.stream(mode, messages):
                    if event.type == StreamEventType.CONTENT:
                        parser.consume(event.content, _print, citations.append)
                    elif event.type == StreamEventType.TOOL:
                        print(f"\n[tool: {event.content}]")
                parser.flush(_print)
            else:
                answer = await engine.query(mode, messages)
                parser.consume(answer, _print, citations.append)
                parser.flush(_print)
        except RetrievalError as e:
            print(f"\nError: the knowledge base could not be queried ({e})")
            return 1
        print()

    if citations:
        print(f"\nCitations: {', '.join(dict.fromkeys(citations))}")
    if show_trace:
        print("\nTrace:")
        print(json.dumps(engine.trace.snapshot().to_dict(), indent=2))
    return 0


async def main_async(args: argparse.Namespace) -> int:
    try:
        return await ask(uuid.UUID(args.project_id), args.question, QueryMode(args.mode), args.stream, args.trace)
    finally:
        await dispose_engine()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Ask a question against a project's knowledge graph")
    parser.add_argument("project_id", help="Project to query")
    parser.add_argument("question", help="Question to ask")
    parser.add_argument(
        "--mode", "-m",
        choices=[mode.value for mode in QueryMode],
        default=QueryMode.LOCAL.value,
        help="Retrieval strategy (default: local)",
    )
    parser.add_argument("--stream", "-s", action="store_true", help="Print the answer as it is generated")
    parser.add_argument("--trace", "-t", action="store_true", help="Print the query trace")

    args = parser.parse_args()
    setup_logging()
    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
